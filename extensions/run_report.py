from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from extensions.error_logger import ErrorLogger
from extensions.logging_manager import LoggingManager
from extensions.output_paths import ensure_session_dirs, save_session_output, town_filename
from scraper.models import ScrapedBusiness

BUSINESS_COLUMNS = [
    "name", "phone", "provider", "address", "maps_address", "type_of_business", "town",
]

# ---------------------------
# Frames
# ---------------------------

def businesses_dataframe(businesses: Iterable[ScrapedBusiness]) -> pd.DataFrame:
    rows = [b.to_dict() for b in businesses]
    if not rows:
        return pd.DataFrame(columns=BUSINESS_COLUMNS)
    return pd.DataFrame(rows, columns=BUSINESS_COLUMNS)


def provider_counts(df: pd.DataFrame) -> pd.DataFrame:
    """
    One row per provider with the number of businesses it services.
    Businesses with no provider are counted under 'Unknown'.
    """
    if df.empty:
        return pd.DataFrame(columns=["provider", "count"])
    providers = df["provider"].replace("", "Unknown").fillna("Unknown")
    out = providers.value_counts().rename_axis("provider").reset_index(name="count")
    return out.sort_values(["count", "provider"], ascending=[False, True]).reset_index(drop=True)


def town_counts(df: pd.DataFrame, towns: Sequence[str] = ()) -> pd.DataFrame:
    counts = df.groupby("town").size() if not df.empty else pd.Series(dtype=int)
    order = list(towns) or list(counts.index)
    return pd.DataFrame({
        "town": order,
        "businesses": [int(counts.get(t, 0)) for t in order],
    })


# ---------------------------
# Writers
# ---------------------------

def write_run_report(
    session_id: str,
    businesses: Sequence[ScrapedBusiness],
    *,
    logging_manager: Optional[LoggingManager] = None,
    error_logger: Optional[ErrorLogger] = None,
    towns: Sequence[str] = (),
    failed_towns: Sequence[str] = (),
    root: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Write the artifacts of one session under outputs/{session_id}/:
    businesses.csv, towns/<town>.csv, providers.csv, summary.txt and
    error_log.json. Returns the written paths plus headline counts.
    """
    dirs = ensure_session_dirs(session_id, root)
    base = dirs["base"]
    df = businesses_dataframe(businesses)

    paths: Dict[str, Path] = {}
    paths["businesses"] = base / "businesses.csv"
    df.to_csv(paths["businesses"], index=False, encoding="utf-8")

    town_paths: List[Path] = []
    for town, group in (df.groupby("town", sort=False) if not df.empty else []):
        p = dirs["towns"] / town_filename(str(town))
        group.to_csv(p, index=False, encoding="utf-8")
        town_paths.append(p)

    providers = provider_counts(df)
    paths["providers"] = base / "providers.csv"
    providers.to_csv(paths["providers"], index=False, encoding="utf-8")

    paths["summary"] = base / "summary.txt"
    paths["summary"].write_text(
        "\n".join(_summary_lines(df, providers, logging_manager, towns, failed_towns)) + "\n",
        encoding="utf-8",
    )

    if error_logger is not None:
        paths["error_log"] = save_session_output(
            session_id, "error_log.json", error_logger.export_error_logs(), root=root
        )

    return {
        "paths": {k: str(v) for k, v in paths.items()},
        "town_files": [str(p) for p in town_paths],
        "businesses": int(len(df)),
        "providers": int(len(providers)),
        "failed_towns": list(failed_towns),
    }


def _summary_lines(
    df: pd.DataFrame,
    providers: pd.DataFrame,
    logging_manager: Optional[LoggingManager],
    towns: Sequence[str],
    failed_towns: Sequence[str],
) -> List[str]:
    if logging_manager is not None:
        lines = list(logging_manager.get_summary_table())
    else:
        lines = ["=== SCRAPING SUMMARY ===", ""]
        for _, row in town_counts(df, towns).iterrows():
            lines.append(f"{row['town']} | {row['businesses']}")
    lines += ["", "Providers:"]
    if providers.empty:
        lines.append("  (none)")
    for _, row in providers.iterrows():
        lines.append(f"  {row['provider']}: {row['count']}")
    if failed_towns:
        lines += ["", f"Failed towns ({len(failed_towns)}): {', '.join(failed_towns)}"]
    return lines

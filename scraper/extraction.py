from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from .filters import is_opening_hours, looks_like_phone_number, looks_like_rating

logger = logging.getLogger(__name__)

# Upper bound of raw cards pulled from a result feed before filtering
MAX_RAW_CARDS = 20

_CAPTCHA_PAT = re.compile(
    r"(unusual traffic from your computer|not a robot|are you a robot|captcha|"
    r"verifying you are human|before you continue to google)",
    re.I,
)


class PageShape(Enum):
    LIST = "list"
    DETAILS = "details"


class Extractor(Protocol):
    """Turns a loaded results page into raw candidate maps. Never raises for markup quirks."""

    async def detect_shape(self, page: Any) -> PageShape: ...

    async def extract_list(self, page: Any) -> List[Dict[str, Any]]: ...

    async def extract_details(self, page: Any) -> Optional[Dict[str, Any]]: ...

    async def page_text(self, page: Any) -> str: ...


def looks_like_captcha(text: str) -> bool:
    return bool(_CAPTCHA_PAT.search(text or ""))


_DETECT_JS = """
() => {
  if (document.querySelector('div[role="feed"]')) return 'list';
  const main = document.querySelector('div[role="main"]');
  if (main && main.querySelector('h1')) return 'details';
  return 'list';
}
"""

_LIST_JS = """
(maxCards) => {
  const cards = Array.from(document.querySelectorAll('div[role="feed"] .Nv2PK')).slice(0, maxCards);
  return cards.map((card) => {
    const nameEl = card.querySelector('.qBF1Pd');
    const anchor = card.querySelector('a');
    const phoneEl = card.querySelector('.UsdlK');
    const spans = [];
    card.querySelectorAll('.W4Efsd span').forEach((s) => {
      if (s.classList.contains('UsdlK') || s.querySelector('.UsdlK')) return;
      let t = (s.textContent || '').trim();
      if (t.startsWith('·')) t = t.substring(1).trim();
      if (t && t !== '·') spans.push(t);
    });
    return {
      name: nameEl ? (nameEl.textContent || '').trim() : '',
      maps_address: anchor ? (anchor.href || '') : '',
      phone: phoneEl ? (phoneEl.textContent || '').trim() : '',
      info: spans,
    };
  });
}
"""

_DETAILS_JS = """
() => {
  const main = document.querySelector('div[role="main"]');
  const h1 = main ? main.querySelector('h1') : null;
  let address = '';
  for (const sel of ['button[data-item-id="address"]', 'div[data-item-id="address"]', 'button[aria-label*="Address"]']) {
    const el = document.querySelector(sel);
    if (el && (el.textContent || '').trim()) { address = el.textContent.trim(); break; }
  }
  let phone = '';
  const btn = document.querySelector('button[data-item-id^="phone:tel:"]');
  if (btn) {
    const m = (btn.getAttribute('aria-label') || '').match(/\\d[\\d\\s\\-()]+\\d/);
    if (m) phone = m[0].trim();
  }
  if (!phone && main) {
    const m = (main.textContent || '').match(/\\d{3}[\\s\\-]?\\d{3}[\\s\\-]?\\d{4}/);
    if (m) phone = m[0];
  }
  return {
    name: h1 ? (h1.textContent || '').trim() : '',
    maps_address: window.location.href,
    address: address,
    phone: phone,
  };
}
"""

_ADDRESS_HINTS = ("street", "ave", "avenue", "road", "rd", "drive", "dr", "lane", "ln", "way", "blvd", "boulevard")


def pick_address(info: List[str]) -> str:
    """Choose the address-looking fragment from a card's info line."""
    for text in info or []:
        low = text.lower()
        if (
            is_opening_hours(text)
            or looks_like_rating(text)
            or looks_like_phone_number(text)
            or "open" in low
            or "close" in low
            or "wheelchair" in low
        ):
            continue
        # short fragments are usually the category label
        if len(text.split()) <= 3 and not any(h in low for h in _ADDRESS_HINTS):
            continue
        if any(h in low for h in _ADDRESS_HINTS) or len(text) > 10:
            return text
    return ""


class GoogleMapsExtractor:
    """Default extraction capability for Google Maps search result pages."""

    def __init__(self, max_cards: int = MAX_RAW_CARDS) -> None:
        self.max_cards = max_cards

    async def detect_shape(self, page: Any) -> PageShape:
        try:
            shape = await page.evaluate(_DETECT_JS)
        except Exception as e:
            logger.debug("detect_shape failed, assuming list: %s", e)
            return PageShape.LIST
        return PageShape.DETAILS if shape == "details" else PageShape.LIST

    async def extract_list(self, page: Any) -> List[Dict[str, Any]]:
        try:
            cards = await page.evaluate(_LIST_JS, self.max_cards)
        except Exception as e:
            logger.debug("extract_list failed: %s", e)
            return []
        out: List[Dict[str, Any]] = []
        for card in cards or []:
            card = dict(card or {})
            card["address"] = pick_address(card.pop("info", []) or [])
            out.append(card)
        return out

    async def extract_details(self, page: Any) -> Optional[Dict[str, Any]]:
        try:
            data = await page.evaluate(_DETAILS_JS)
        except Exception as e:
            logger.debug("extract_details failed: %s", e)
            return None
        if not data or not (data.get("name") or "").strip():
            return None
        return data

    async def page_text(self, page: Any) -> str:
        try:
            return await page.evaluate("() => document.body ? document.body.innerText : ''") or ""
        except Exception:
            return ""

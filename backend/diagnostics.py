"""
Diagnostics - timing logs, debug screenshots and element dumps for the
login audit trail.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError, Page

from config import DEBUG_DIR

logger = logging.getLogger("Diagnostics")


@dataclass
class Screenshot:
    path: Optional[str]
    data: bytes


@asynccontextmanager
async def log_timing(operation: str, trace_id: str = ""):
    """Log how long an operation takes."""
    prefix = f"[{trace_id}] " if trace_id else ""
    start = time.time()
    try:
        yield
    finally:
        elapsed = time.time() - start
        logger.info(f"{prefix}⏱️ {operation}: {elapsed:.2f}s")


async def save_debug_screenshot(page: Page, name: str, debug_dir: str = DEBUG_DIR) -> Optional[Screenshot]:
    """Save a screenshot for debugging, plus ``latest.png`` for live view."""
    try:
        data = await page.screenshot(full_page=False)
    except PlaywrightError as e:
        logger.warning(f"Failed to capture screenshot: {e}")
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"{name}_{timestamp}.png"
    path = os.path.join(debug_dir, filename)
    try:
        os.makedirs(debug_dir, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        with open(os.path.join(debug_dir, "latest.png"), "wb") as f:
            f.write(data)
        logger.info(f"Screenshot saved: {filename}")
    except OSError as e:
        logger.warning(f"Failed to save screenshot: {e}")
        path = None
    return Screenshot(path=path, data=data)


# Visible controls only; input values are never collected
CONTROLS_JS = '''() => {
    const out = [];
    for (const node of document.querySelectorAll('button, a[href], input, textarea, [role="button"], [role="dialog"]')) {
        const box = node.getBoundingClientRect();
        if (!box.width || !box.height) continue;
        out.push({
            tag: node.tagName.toLowerCase(),
            label: node.tagName === 'INPUT' || node.tagName === 'TEXTAREA'
                ? (node.getAttribute('placeholder') || '')
                : (node.innerText || node.getAttribute('aria-label') || '').trim().slice(0, 40),
            attrs: ['id', 'type', 'name', 'role']
                .filter((key) => node.getAttribute(key))
                .map((key) => `${key}=${node.getAttribute(key)}`),
        });
        if (out.length >= 60) break;
    }
    return out;
}'''


def describe_control(control: dict) -> str:
    attrs = ",".join(control.get("attrs") or [])
    label = (control.get("label") or "").replace("\n", " ")
    head = f"{control.get('tag', '?')}[{attrs}]" if attrs else control.get("tag", "?")
    return f'{head} "{label[:30]}"' if label else head


async def dump_interactive_elements(page: Page, context: str = "") -> List[str]:
    """Log the visible controls of the page; used when a step fails."""
    try:
        controls = await page.evaluate(CONTROLS_JS) or []
    except PlaywrightError as e:
        logger.warning(f"Control dump unavailable: {e}")
        return []

    lines = [describe_control(c) for c in controls]
    logger.info(f"🔎 {context or 'page'}: {len(lines)} visible controls")
    for line in lines:
        logger.info(f"    {line}")
    return lines

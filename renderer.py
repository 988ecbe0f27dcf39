"""HTML → single-page PDF rendering with headless Chromium (Playwright).

The whole document is exported as one continuous A4-wide page whose height
follows the rendered body, so charts and long reports are never split.
"""
import logging
import threading
import time
from dataclasses import dataclass

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from errors import RenderBusyError, RenderError, RenderTimeoutError
from logs import debug_event

logger = logging.getLogger("html2drive.renderer")

A4_WIDTH_MM = 210
A4_HEIGHT_MM = 297
PX_TO_MM = 0.264583

LOAD_TIMEOUT_MS = 30_000
SETTLE_MS = 3_000
READY_FLAG = "__renderReady"

# Live canvases are unreliable in print output; swap each for a PNG <img>
# of the same on-screen size (CSS size if set, else intrinsic pixels).
FLATTEN_CANVASES_JS = """
() => {
  const canvases = Array.from(document.querySelectorAll("canvas"));
  canvases.forEach(canvas => {
    const img = document.createElement("img");
    img.src = canvas.toDataURL("image/png", 1.0);
    img.style.width = canvas.style.width || canvas.width + "px";
    img.style.height = canvas.style.height || canvas.height + "px";
    canvas.replaceWith(img);
  });
  return canvases.length;
}
"""

BODY_HEIGHT_JS = "() => document.body.scrollHeight"


def page_height_mm(body_height_px):
    """Height of the exported page: the body height, but never below A4."""
    return max(A4_HEIGHT_MM, body_height_px * PX_TO_MM)


@dataclass
class RenderResult:
    pdf: bytes
    height_mm: float
    body_height_px: int


def flatten_canvases(page):
    return page.evaluate(FLATTEN_CANVASES_JS)


class Renderer:
    def __init__(
        self,
        load_timeout_ms=LOAD_TIMEOUT_MS,
        settle_ms=SETTLE_MS,
        ready_flag=READY_FLAG,
        launch_args=None,
    ):
        self.load_timeout_ms = load_timeout_ms
        self.settle_ms = settle_ms
        self.ready_flag = ready_flag
        self.launch_args = launch_args or ["--no-sandbox", "--disable-dev-shm-usage"]

    def _settle(self, page):
        """Give client-side scripts time to paint.

        Documents that set ``window.<ready_flag> = true`` release the wait
        early; others wait the full settle delay.
        """
        if self.settle_ms <= 0:
            return
        if not self.ready_flag:
            page.wait_for_timeout(self.settle_ms)
            return
        try:
            page.wait_for_function(
                f"() => window.{self.ready_flag} === true",
                timeout=self.settle_ms,
            )
            debug_event(logger, "render_ready_flag")
        except PlaywrightTimeoutError:
            debug_event(logger, "render_settle_elapsed", settle_ms=self.settle_ms)

    def _render_page(self, page, html):
        try:
            page.set_content(html, wait_until="networkidle", timeout=self.load_timeout_ms)
        except PlaywrightTimeoutError as e:
            raise RenderTimeoutError(
                f"Document did not finish loading within {self.load_timeout_ms}ms"
            ) from e
        self._settle(page)

        flattened = flatten_canvases(page)
        body_height = int(page.evaluate(BODY_HEIGHT_JS) or 0)
        height_mm = page_height_mm(body_height)
        debug_event(
            logger,
            "render_measured",
            canvases=flattened,
            body_px=body_height,
            height_mm=round(height_mm, 2),
        )

        pdf = page.pdf(
            print_background=True,
            margin={"top": "0mm", "right": "0mm", "bottom": "0mm", "left": "0mm"},
            width=f"{A4_WIDTH_MM}mm",
            height=f"{height_mm}mm",
        )
        return RenderResult(pdf=pdf, height_mm=height_mm, body_height_px=body_height)

    def render(self, html):
        t0 = time.perf_counter()
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True, args=self.launch_args)
                try:
                    page = browser.new_page()
                    result = self._render_page(page, html)
                finally:
                    browser.close()
        except RenderError:
            raise
        except Exception as e:
            logger.exception("render failed")
            raise RenderError(f"Rendering failed: {e}") from e
        if not result.pdf:
            raise RenderError("Rendering produced an empty PDF")
        logger.info(
            "render ok: bytes=%s height_mm=%.1f elapsed=%.2fs",
            len(result.pdf),
            result.height_mm,
            time.perf_counter() - t0,
        )
        return result


class RenderPool:
    """Admission control in front of a renderer.

    At most ``size`` renders (and so browser processes) run at once. A
    request that cannot get a slot within ``acquire_timeout`` seconds is
    rejected with ``RenderBusyError``.
    """

    def __init__(self, renderer, size=2, acquire_timeout=60.0):
        if size < 1:
            raise ValueError("render pool size must be at least 1")
        self.renderer = renderer
        self.size = size
        self.acquire_timeout = acquire_timeout
        self._slots = threading.BoundedSemaphore(size)

    def render(self, html):
        if not self._slots.acquire(timeout=self.acquire_timeout):
            logger.warning("render pool saturated: size=%s waited=%ss", self.size, self.acquire_timeout)
            raise RenderBusyError("Renderer is busy, try again later")
        try:
            return self.renderer.render(html)
        finally:
            self._slots.release()

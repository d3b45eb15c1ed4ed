import base64
import io
from typing import Callable, Optional

from PIL import Image
from playwright.sync_api import Error as PlaywrightError

from .logger import log
from .retry import retry


class ScreenshotService:
    """
    Captures screenshots of the application under test as Pillow images.
    The source is either a Playwright (sync) page or any callable returning PNG bytes or an image.
    """

    def __init__(self, page=None, capture_fn: Optional[Callable[[], object]] = None, quality: int = 80):
        if page is None and capture_fn is None:
            raise ValueError("ScreenshotService needs a page or a capture function")
        self.page = page
        self.capture_fn = capture_fn
        self.quality = quality

    @retry(attempts=3, allowed_exceptions=(OSError, PlaywrightError))
    def _grab(self, full_page: bool):
        if self.capture_fn is not None:
            return self.capture_fn()
        return self.page.screenshot(full_page=full_page, type='png')

    def capture(self, full_page: bool = False) -> Image.Image:
        try:
            raw = self._grab(full_page)
            img = raw if isinstance(raw, Image.Image) else Image.open(io.BytesIO(raw))
            # Convert to RGB (in case of RGBA) for JPEG compatibility
            if img.mode in ('RGBA', 'P', 'LA'):
                img = img.convert('RGB')
            img.load()
            log("DEBUG", "screenshot_captured", f"Captured screenshot: {img.size[0]}x{img.size[1]}")
            return img
        except Exception as e:
            log("ERROR", "screenshot_failed", "Failed to capture screenshot", error=str(e))
            raise

    def capture_to_file(self, path: str, full_page: bool = False) -> str:
        img = self.capture(full_page)
        img.save(path, format="JPEG", quality=self.quality, optimize=True)
        log("DEBUG", "screenshot_saved", f"Saved screenshot to {path} ({img.size[0]}x{img.size[1]})")
        return path

    def to_base64(self, img: Image.Image) -> str:
        """
        Converts Pillow Image to base64 encoded JPEG string.
        """
        buffered = io.BytesIO()
        img.save(buffered, format="JPEG", quality=self.quality, optimize=True)
        return base64.b64encode(buffered.getvalue()).decode('utf-8')

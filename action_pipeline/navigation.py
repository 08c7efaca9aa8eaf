"""
Navigation targets for the default navigation path
"""
import logging
import webbrowser
from typing import List, Protocol, Tuple

logger = logging.getLogger(__name__)


class Navigator(Protocol):
    """Anything that can open a URL in a named target"""

    def navigate(self, url: str, target: str = "_self") -> None:
        ...


class WebBrowserNavigator:
    """Opens URLs with the system web browser"""

    # _self reuses the current window, everything else gets a new tab
    TARGET_MODES = {"_self": 0, "_blank": 2}

    def navigate(self, url: str, target: str = "_self") -> None:
        mode = self.TARGET_MODES.get(target, 2)
        logger.info(f"Opening {url} (target={target})")
        if not webbrowser.open(url, new=mode):
            raise RuntimeError(f"No browser available to open {url}")


class RecordingNavigator:
    """Records navigations instead of performing them"""

    def __init__(self):
        self.visits: List[Tuple[str, str]] = []

    def navigate(self, url: str, target: str = "_self") -> None:
        logger.debug(f"Recorded navigation to {url} (target={target})")
        self.visits.append((url, target))

"""
Sensitive data scrubbing for action contexts
Scans query strings and custom context data and masks detected values
"""
import logging
from typing import Any, Dict, List, Optional

from .base import SensitiveDataDetector
from .detectors import (
    ApiKeyDetector,
    CreditCardDetector,
    EmailDetector,
    PasswordDetector,
    PhoneDetector
)

logger = logging.getLogger(__name__)


class SensitiveDataScrubber:
    """Runs a set of detectors over context strings"""

    def __init__(self, detectors: Optional[List[SensitiveDataDetector]] = None):
        # Secrets first: their spans may contain digit runs the phone detector would claim
        self.detectors: List[SensitiveDataDetector] = detectors if detectors is not None else [
            PasswordDetector(),
            ApiKeyDetector(),
            CreditCardDetector(),
            EmailDetector(),
            PhoneDetector()
        ]
        self.detector_map = {d.name: d for d in self.detectors}

    def scan(self, text: str) -> List[str]:
        """Names of the detectors that fire on the text"""
        return [d.name for d in self.detectors if d.detects(text)]

    def redact(self, text: str) -> str:
        """Mask every sensitive value in the text"""
        for detector in self.detectors:
            text = detector.redact(text)
        return text

    def redact_mapping(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``data`` with every nested string redacted"""
        return {key: self._redact_value(value) for key, value in data.items()}

    def _redact_value(self, value: Any) -> Any:
        if isinstance(value, str):
            if (redacted := self.redact(value)) != value:
                logger.debug(f"Redacted sensitive data: {self.scan(value)}")
            return redacted
        if isinstance(value, dict):
            return self.redact_mapping(value)
        if isinstance(value, list):
            return [self._redact_value(item) for item in value]
        return value

    def add_detector(self, detector: SensitiveDataDetector) -> None:
        self.detectors.append(detector)
        self.detector_map[detector.name] = detector

    def remove_detector(self, name: str) -> bool:
        """Remove a detector by name"""
        if detector := self.detector_map.pop(name, None):
            self.detectors.remove(detector)
            return True
        return False

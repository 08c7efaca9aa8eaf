"""Base class for sensitive data detectors"""
from abc import ABC, abstractmethod
from typing import List, NamedTuple


class DetectedSpan(NamedTuple):
    """A run of sensitive text and its position"""
    text: str
    start: int
    end: int


class SensitiveDataDetector(ABC):
    """Finds one kind of sensitive data inside free text"""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def find_spans(self, text: str) -> List[DetectedSpan]:
        """
        Find every occurrence of sensitive data in the text.

        Args:
            text: The text to scan

        Returns:
            Detected spans, in any order
        """
        pass

    def detects(self, text: str) -> bool:
        """Whether the text holds at least one sensitive value"""
        return bool(self.find_spans(text))

    def redact(self, text: str, mask_char: str = '*') -> str:
        """
        Mask every detected span, keeping two characters on either side
        of long values so redacted contexts remain recognisable in logs.
        """
        spans = self.find_spans(text)
        if not spans:
            return text

        result = text
        # Replace from the end so earlier offsets stay valid
        for span in sorted(spans, key=lambda s: s.start, reverse=True):
            length = span.end - span.start
            if length > 4:
                masked = result[span.start:span.start + 2] + mask_char * (length - 4) + result[span.end - 2:span.end]
            else:
                masked = mask_char * length
            result = result[:span.start] + masked + result[span.end:]

        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"

"""Sensitive data detection and redaction package"""
from .base import DetectedSpan, SensitiveDataDetector
from .detectors import (
    ApiKeyDetector,
    CreditCardDetector,
    EmailDetector,
    PasswordDetector,
    PhoneDetector
)
from .scrubber import SensitiveDataScrubber

__all__ = [
    'DetectedSpan',
    'SensitiveDataDetector',
    'PhoneDetector',
    'EmailDetector',
    'PasswordDetector',
    'ApiKeyDetector',
    'CreditCardDetector',
    'SensitiveDataScrubber'
]

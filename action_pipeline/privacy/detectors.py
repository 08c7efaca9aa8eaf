"""
Detectors for personal data and secrets that must not travel inside an
action context: phone numbers, email addresses, exposed passwords, API keys
and payment card numbers.
"""
import logging
import math
import re
from typing import Dict, List, Optional, Pattern

import phonenumbers
import zxcvbn
from email_validator import EmailNotValidError, validate_email
from luhnchecker.luhn import Luhn

from .base import DetectedSpan, SensitiveDataDetector

logger = logging.getLogger(__name__)


class PhoneDetector(SensitiveDataDetector):
    """Phone numbers, recognised with Google's libphonenumber"""

    # Digits right after these words are identifiers, not phone numbers
    IDENTIFIER_HINTS = ('key', 'token', 'secret', 'id', 'hash', 'index')

    def __init__(self, default_region: Optional[str] = None):
        super().__init__('phone')
        self.default_region = default_region

    def find_spans(self, text: str) -> List[DetectedSpan]:
        spans = []
        seen = set()

        try:
            for match in phonenumbers.PhoneNumberMatcher(text, self.default_region):
                prefix = text[max(0, match.start - 20):match.start].lower()
                if any(hint in prefix for hint in self.IDENTIFIER_HINTS):
                    continue

                number = match.number
                if not (phonenumbers.is_valid_number(number) or phonenumbers.is_possible_number(number)):
                    continue

                key = phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164)
                if key not in seen:
                    seen.add(key)
                    spans.append(DetectedSpan(match.raw_string, match.start, match.end))
        except Exception as e:
            logger.debug(f"Phone number scan failed: {e}")

        return spans


class EmailDetector(SensitiveDataDetector):
    """Email addresses, confirmed with email-validator"""

    CANDIDATE = re.compile(
        r'\b[A-Za-z0-9][A-Za-z0-9._%+-]*@[A-Za-z0-9][A-Za-z0-9.-]*\.[A-Za-z]{2,}\b'
    )

    def __init__(self):
        super().__init__('email')

    def find_spans(self, text: str) -> List[DetectedSpan]:
        spans = []
        for match in self.CANDIDATE.finditer(text):
            try:
                validate_email(match.group(0), check_deliverability=False)
            except EmailNotValidError:
                continue
            spans.append(DetectedSpan(match.group(0), match.start(), match.end()))
        return spans


class PasswordDetector(SensitiveDataDetector):
    """Passwords exposed as key/value pairs or inside connection URLs"""

    EXPOSURE_PATTERNS: List[Pattern[str]] = [
        re.compile(r'(?i)(?:password|passwd|pwd|pass|secret)\s*[:=]\s*[\'"]?([^\s\'"]+)[\'"]?'),
        re.compile(r'(?i)(?:mysql|postgres|postgresql|mongodb|redis|https?)://[^:/\s]+:([^@\s]+)@'),
    ]

    PLACEHOLDERS = {
        'xxx', '***', 'null', 'none', 'undefined', 'empty', 'test', 'demo',
        'example', 'sample', 'placeholder', 'changeme', 'password', 'secret',
        '123456', 'admin', 'root'
    }

    SPECIAL_CHARS = "!@#$%^&*()-=+[]{};'\",.<>?/\\|"

    def __init__(self, min_length: int = 8, min_entropy: float = 40.0):
        super().__init__('password')
        self.min_length = min_length
        self.min_entropy = min_entropy

    def _entropy_bits(self, candidate: str) -> float:
        charset = sum((
            26 if any(c.islower() for c in candidate) else 0,
            26 if any(c.isupper() for c in candidate) else 0,
            10 if any(c.isdigit() for c in candidate) else 0,
            32 if any(c in self.SPECIAL_CHARS for c in candidate) else 0,
        ))
        return len(candidate) * math.log2(charset) if charset else 0.0

    def looks_real(self, candidate: str) -> bool:
        """Heuristic: is this value a real credential rather than a placeholder?"""
        if not self.min_length <= len(candidate) <= 64:
            return False
        if candidate.lower() in self.PLACEHOLDERS or candidate.startswith(('$', '%')):
            return False
        if candidate.isalpha():
            return False

        # zxcvbn score: 0 very weak ... 4 very strong
        if zxcvbn.zxcvbn(candidate)['score'] >= 2:
            return True
        return self._entropy_bits(candidate) >= self.min_entropy

    def find_spans(self, text: str) -> List[DetectedSpan]:
        spans = []
        seen = set()
        for pattern in self.EXPOSURE_PATTERNS:
            for match in pattern.finditer(text):
                candidate = match.group(1)
                if candidate in seen or not self.looks_real(candidate):
                    continue
                seen.add(candidate)
                spans.append(DetectedSpan(match.group(0), match.start(), match.end()))
        return spans


class ApiKeyDetector(SensitiveDataDetector):
    """API keys and bearer tokens for common services"""

    KEY_PATTERNS: Dict[str, Pattern[str]] = {
        'assignment': re.compile(
            r'(?i)(?:api[_-]?key|apikey|api[_-]?token|access[_-]?token)\s*[:=]\s*[\'"]?[a-zA-Z0-9_\-]{10,}[\'"]?'
        ),
        'aws_access_key': re.compile(r'\bAKIA[A-Z0-9]{16}\b'),
        'secret_key': re.compile(r'\bsk[-_](?:live_|test_)?[a-zA-Z0-9_\-]{8,}\b'),
        'github': re.compile(r'\bgh[po]_[a-zA-Z0-9]{36}\b'),
        'slack': re.compile(r'xox[baprs]-[0-9]{10,13}-[0-9]{10,13}-[a-zA-Z0-9]{24,34}'),
        'google': re.compile(r'AIza[0-9A-Za-z_\-]{35}'),
        'bearer': re.compile(r'(?i)bearer\s+[a-zA-Z0-9_\-.]{20,}'),
    }

    def __init__(self, patterns: Optional[Dict[str, Pattern[str]]] = None):
        super().__init__('api_key')
        self.patterns = patterns or self.KEY_PATTERNS

    @staticmethod
    def _is_placeholder(key: str) -> bool:
        lowered = key.lower()
        if 'example' in lowered or 'your-api-key' in lowered or 'your_api_key' in lowered:
            return True
        # Runs of one or two repeated characters in the value part
        value = re.split(r'[:=\s]+', key)[-1].strip('\'"')
        return len(set(value.replace('-', '').replace('_', ''))) <= 2

    def find_spans(self, text: str) -> List[DetectedSpan]:
        spans = []
        seen = set()
        for pattern in self.patterns.values():
            for match in pattern.finditer(text):
                key = match.group(0)
                if key in seen or self._is_placeholder(key):
                    continue
                seen.add(key)
                spans.append(DetectedSpan(key, match.start(), match.end()))
        return spans


class CreditCardDetector(SensitiveDataDetector):
    """Payment card numbers that pass the Luhn checksum"""

    CANDIDATE = re.compile(r'\b(?:\d[ \-]?){12,18}\d\b')

    # Published test numbers are not personal data
    TEST_NUMBERS = {
        '4111111111111111', '5555555555554444', '5105105105105100',
        '378282246310005', '371449635398431', '6011111111111117',
        '6011000990139424', '3530111333300000', '3566002020360505',
        '4242424242424242', '4000056655665556',
    }

    def __init__(self):
        super().__init__('credit_card')
        self.checker = Luhn()

    def find_spans(self, text: str) -> List[DetectedSpan]:
        spans = []
        seen = set()
        for match in self.CANDIDATE.finditer(text):
            digits = re.sub(r'[ \-]', '', match.group(0))
            if digits in seen or digits in self.TEST_NUMBERS:
                continue
            try:
                if not self.checker.check_luhn(digits):
                    continue
                if self.checker.credit_card_issuer(digits) == "invalid card number":
                    continue
            except Exception:
                continue
            seen.add(digits)
            spans.append(DetectedSpan(match.group(0), match.start(), match.end()))
        return spans

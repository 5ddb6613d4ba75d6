"""
Input Validation Utilities

- Text sanitization and injection checks for job and application text
- Length rules for marketplace job fields
- Budget / quote amount validation
- Masking of payment identifiers for logs
"""
import re
from decimal import Decimal, InvalidOperation


class ValidationPatterns:
    """Regex patterns for validation"""

    # Australian mobile (04XX XXX XXX / +61 4XX XXX XXX) or any E.164 number
    PHONE_AUSTRALIA = re.compile(r"^(?:\+?61|0)4\d{8}$")
    PHONE_INTERNATIONAL = re.compile(r"^\+[1-9]\d{6,14}$")

    SQL_INJECTION_PATTERNS = [
        re.compile(r"--\s*$|/\*|\*/", re.IGNORECASE),
        re.compile(r"['\"]\s*(OR|AND)\s+['\"]?\w*['\"]?\s*=", re.IGNORECASE),
        re.compile(r"\b(OR|AND)\s+(\d+\s*=\s*\d+|'[^']*'\s*=\s*'[^']*')", re.IGNORECASE),
        re.compile(r";\s*(SELECT|INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|TRUNCATE)\b", re.IGNORECASE),
        re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b", re.IGNORECASE),
    ]

    # "onclick=" but not "condition = good"
    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
    ]


class PhoneNumberValidator:

    @staticmethod
    def validate(phone: str) -> bool:
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-()]", "", phone)
        return bool(
            ValidationPatterns.PHONE_AUSTRALIA.match(cleaned)
            or ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned)
        )

    @staticmethod
    def normalize(phone: str) -> str:
        """04XX XXX XXX -> +614XXXXXXXX"""
        cleaned = re.sub(r"[^\d+]", "", phone)
        if cleaned.startswith("04"):
            return "+61" + cleaned[1:]
        if cleaned.startswith("61") and not cleaned.startswith("+"):
            return "+" + cleaned
        return cleaned

    @staticmethod
    def mask(phone: str) -> str:
        if len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Keep only the tail of an identifier: pm_1234abcd -> ****abcd"""
    if not value or len(value) <= visible:
        return "****"
    return "****" + value[-visible:]


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 2000) -> str:
        """
        Trim, cap length, drop null bytes and collapse runs of spaces.

        HTML escaping is left to display time.
        """
        if not text:
            return ""
        sanitized = text.strip()[:max_length].replace("\x00", "")
        return re.sub(r" +", " ", sanitized)

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """Returns (is_safe, detected_pattern)"""
        if not text:
            return True, None

        for pattern in ValidationPatterns.SQL_INJECTION_PATTERNS:
            if pattern.search(text):
                return False, "SQL injection pattern detected"

        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "XSS pattern detected"

        return True, None

    @staticmethod
    def remove_control_characters(text: str) -> str:
        """Keep newlines and tabs, drop other control characters"""
        if not text:
            return ""
        return "".join(char for char in text if char >= " " or char in "\n\r\t")


class JobFieldValidator:
    """Length rules for marketplace job text fields"""

    TITLE = (5, 200)
    DESCRIPTION = (20, 2000)
    LOCATION = (3, 100)

    @staticmethod
    def _check(label: str, value: str | None, bounds: tuple[int, int]) -> str | None:
        minimum, maximum = bounds
        text = (value or "").strip()
        if len(text) < minimum:
            return f"{label} must be at least {minimum} characters"
        if len(text) > maximum:
            return f"{label} must be at most {maximum} characters"
        is_safe, pattern = TextSanitizer.check_for_injection(text)
        if not is_safe:
            return f"{label} contains invalid content: {pattern}"
        return None

    @classmethod
    def validate(
        cls,
        title: str | None = None,
        description: str | None = None,
        location: str | None = None,
        *,
        partial: bool = False
    ) -> list[str]:
        """
        Returns a list of error messages (empty when valid). With partial=True
        only the fields that were provided are checked.
        """
        errors = []
        for label, value, bounds in (
            ("Title", title, cls.TITLE),
            ("Description", description, cls.DESCRIPTION),
            ("Location", location, cls.LOCATION),
        ):
            if partial and value is None:
                continue
            error = cls._check(label, value, bounds)
            if error:
                errors.append(error)
        return errors


class AmountValidator:
    """Monetary amount validation (budgets and quotes, AUD)"""

    MIN_BUDGET = Decimal("50")
    MAX_BUDGET = Decimal("1000000")

    @staticmethod
    def validate(
        amount: "Decimal | float | int | str",
        min_value: Decimal = Decimal("0"),
        max_value: Decimal = Decimal("100000")
    ) -> tuple[bool, str | None]:
        """Returns (is_valid, error_message)"""
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            return False, "Amount must be a number"

        if value < min_value:
            return False, f"Amount must be at least {min_value}"

        if value > max_value:
            return False, f"Amount cannot exceed {max_value}"

        if value != value.quantize(Decimal("0.01")):
            return False, "Amount cannot have more than 2 decimal places"

        return True, None

    @classmethod
    def validate_budget(cls, amount: "Decimal | float | int | str") -> tuple[bool, str | None]:
        return cls.validate(amount, cls.MIN_BUDGET, cls.MAX_BUDGET)

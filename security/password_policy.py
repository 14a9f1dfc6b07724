import re
from dataclasses import dataclass
from typing import List, Tuple

from security.errors import WeakCredential

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class PasswordPolicy:
    min_len: int = 8
    max_len: int = 128
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_symbol: bool = False

    @classmethod
    def from_config(cls, config):
        return cls(
            min_len=int(config.get("PASSWORD_MIN_LEN", 8)),
            max_len=int(config.get("PASSWORD_MAX_LEN", 128)),
            require_upper=bool(config.get("PASSWORD_REQUIRE_UPPER", True)),
            require_lower=bool(config.get("PASSWORD_REQUIRE_LOWER", True)),
            require_digit=bool(config.get("PASSWORD_REQUIRE_DIGIT", True)),
            require_symbol=bool(config.get("PASSWORD_REQUIRE_SYMBOL", False)),
        )

    def validate(self, pw: str) -> Tuple[bool, List[str]]:
        if not isinstance(pw, str):
            return False, ["Password must be a string"]

        errors: List[str] = []
        if len(pw) < self.min_len:
            errors.append(f"Password must be at least {self.min_len} characters")
        if len(pw) > self.max_len:
            errors.append(f"Password must be at most {self.max_len} characters")

        if self.require_upper and not _UPPER.search(pw):
            errors.append("Password must include at least 1 uppercase letter")
        if self.require_lower and not _LOWER.search(pw):
            errors.append("Password must include at least 1 lowercase letter")
        if self.require_digit and not _DIGIT.search(pw):
            errors.append("Password must include at least 1 number")
        if self.require_symbol and not _SYMBOL.search(pw):
            errors.append("Password must include at least 1 symbol")

        return (len(errors) == 0), errors

    def enforce(self, pw: str) -> None:
        valid, errors = self.validate(pw)
        if not valid:
            raise WeakCredential(errors)

    def describe(self) -> dict:
        """Requirements as shown to clients before they choose a password."""
        parts = [f"at least {self.min_len} characters"]
        if self.require_upper:
            parts.append("one uppercase letter")
        if self.require_lower:
            parts.append("one lowercase letter")
        if self.require_digit:
            parts.append("one number")
        if self.require_symbol:
            parts.append("one symbol")

        return {
            "requirements": {
                "min_length": self.min_len,
                "max_length": self.max_len,
                "require_uppercase": self.require_upper,
                "require_lowercase": self.require_lower,
                "require_numbers": self.require_digit,
                "require_special_chars": self.require_symbol,
            },
            "description": "Password must contain " + ", ".join(parts) + ".",
        }

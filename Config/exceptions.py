# Config/exceptions.py
"""
Exceptions raised while building an EngineConfig from the environment.
Each message names the environment variable at fault and what it should hold.
"""

from typing import Optional, Any


class ConfigError(Exception):
    """Base exception for all configuration errors."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when an environment value fails validation."""

    def __init__(self, env_var: str, value: Any, reason: str, suggestion: Optional[str] = None):
        self.env_var = env_var
        self.value = value
        self.reason = reason
        self.suggestion = suggestion

        msg = f"Invalid config: {env_var}={value!r}\n  Reason: {reason}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class ConfigRangeError(ConfigValidationError):
    """Raised when a numeric value is outside its allowed range."""

    def __init__(self, env_var: str, value: Any, min_val: Optional[float], max_val: Optional[float]):
        bounds = []
        if min_val is not None:
            bounds.append(f">= {min_val}")
        if max_val is not None:
            bounds.append(f"<= {max_val}")

        suggestion = None
        if min_val is not None and value < min_val:
            suggestion = f"Export {env_var}={min_val} or higher"
        elif max_val is not None and value > max_val:
            suggestion = f"Export {env_var}={max_val} or lower"

        super().__init__(env_var, value, f"Value must be {' and '.join(bounds)}", suggestion)
        self.min_val = min_val
        self.max_val = max_val


class ConfigTypeError(ConfigValidationError):
    """Raised when a value cannot be parsed as the expected type."""

    def __init__(self, env_var: str, value: Any, expected_type: type):
        expected = expected_type.__name__
        super().__init__(
            env_var,
            value,
            f"Expected {expected}, got {value!r}",
            f"Export {env_var} as a plain {expected} literal",
        )
        self.expected_type = expected_type


class ConfigMissingError(ConfigError):
    """Raised when a required config value is missing."""

    def __init__(self, env_var: str, location: str):
        msg = f"Required config missing: {env_var}\n  Expected in: {location}"
        super().__init__(msg)
        self.env_var = env_var
        self.location = location

import os
import yaml
import keyring

from errors import ValidationError
from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """Validated settings stored in a YAML file.

    With ``ENCRYPT_SETTINGS=1`` the ``api_token`` is kept in the system
    keyring and the file only records that a token exists.
    """

    SENSITIVE_KEYS = {
        "api_token",
    }
    SERVICE = "pullup-tracker"

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_raw(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _resolve_secrets(self, data: dict) -> dict:
        if not self.encrypt:
            return data
        resolved = dict(data)
        for key in self.SENSITIVE_KEYS & resolved.keys():
            secret = keyring.get_password(self.SERVICE, key)
            if secret is None:
                resolved.pop(key)
            else:
                resolved[key] = secret
        return resolved

    def load(self) -> SettingsSchema:
        """Return the stored settings merged over the defaults."""
        return validate_settings(self._resolve_secrets(self._read_raw()))

    def save(self, settings: SettingsSchema) -> None:
        out = settings.model_dump(exclude_none=True, exclude_defaults=True)
        if self.encrypt:
            for key in self.SENSITIVE_KEYS & out.keys():
                keyring.set_password(self.SERVICE, key, str(out[key]))
                out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f, sort_keys=True)

    def update(self, **changes) -> SettingsSchema:
        """Apply ``changes`` over the current settings and persist them.

        Unknown keys and out-of-range values raise ``ValidationError`` and
        leave the file untouched. A ``None`` value resets a key to its default.
        """
        unknown = set(changes) - set(SettingsSchema.model_fields)
        if unknown:
            raise ValidationError(f"unknown settings: {sorted(unknown)}")
        data = self.load().model_dump()
        for key, value in changes.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        settings = validate_settings(data)
        self.save(settings)
        return settings


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    """Return validated settings from ``path`` (defaults when missing)."""
    return YamlConfig(path).load()

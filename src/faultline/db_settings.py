"""SettingsMixin: the singleton defect settings document."""

from __future__ import annotations

from faultline.db_base import DBMixinProtocol
from faultline.errors import NotFound
from faultline.models import DefectSettings

SETTINGS_KEY = "defect"


class SettingsMixin(DBMixinProtocol):
    """Read and replace the settings document. Created by ``initialize()``, never deleted."""

    def get_settings(self) -> DefectSettings:
        stored = self.get("settings", SETTINGS_KEY)
        if stored is None:
            raise NotFound(SETTINGS_KEY, kind="Settings")
        return DefectSettings.from_dict(stored["settings"])

    def save_settings(self, settings: DefectSettings) -> DefectSettings:
        if self.get("settings", SETTINGS_KEY) is None:
            raise NotFound(SETTINGS_KEY, kind="Settings")
        self.put("settings", {"key": SETTINGS_KEY, "settings": settings.to_dict()})
        return settings

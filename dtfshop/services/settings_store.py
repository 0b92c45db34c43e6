# dtfshop/services/settings_store.py
import logging
from decimal import InvalidOperation

from sqlalchemy import select

from ..config import Config
from ..model import Setting
from ..utils.money import D

logger = logging.getLogger(__name__)


class SettingsStore:
    """
    Key/value business settings. Every read goes to the table, so an admin
    edit is visible on the next request without a restart.
    """

    def __init__(self, session, defaults=None):
        self.session = session
        self.defaults = dict(Config.SETTING_DEFAULTS if defaults is None else defaults)

    def get(self, key, default=None):
        row = self.session.scalars(select(Setting).where(Setting.key == key)).first()
        if row is not None:
            return row.value
        return self.defaults.get(key, default)

    def all(self) -> dict:
        values = dict(self.defaults)
        for row in self.session.scalars(select(Setting)).all():
            values[row.key] = row.value
        return values

    def set(self, key, value):
        if key not in self.defaults:
            raise ValueError(f"unknown setting: {key}")
        value = "" if value is None else str(value).strip()
        if value:
            self._decimal(key, value, strict=True)
        row = self.session.scalars(select(Setting).where(Setting.key == key)).first()
        if row is None:
            row = Setting(key=key, value=value)
            self.session.add(row)
        else:
            row.value = value
        return row

    def _decimal(self, key, raw, strict=False):
        try:
            return D(raw)
        except (InvalidOperation, TypeError, ValueError):
            if strict:
                raise ValueError(f"setting {key} must be a number")
            logger.warning("setting %s=%r is not a number, using default", key, raw)
            return D(self.defaults[key]) if self.defaults.get(key) else None

    def decimal(self, key):
        raw = self.get(key)
        if raw is None or str(raw).strip() == "":
            return None
        return self._decimal(key, raw)

    # ---- typed accessors --------------------------------------------------
    def tax_rate(self):
        return self.decimal("tax_rate") or D(0)

    def professional_discount_pct(self):
        return self.decimal("professional_discount_pct") or D(0)

    def points_per_euro(self):
        v = self.decimal("loyalty_points_per_euro")
        return D(1) if v is None else v

    def default_shipping_cost(self):
        return self.decimal("default_shipping_cost") or D(0)

    def free_shipping_threshold(self):
        return self.decimal("free_shipping_threshold")

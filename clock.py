"""
=============================================================================
CLOCK.PY — Proveedor de "hoy"
=============================================================================
Toda la lógica de rachas trabaja con FECHAS, no con horas.
"Hoy" depende de la zona horaria del usuario: a las 23:30 en São Paulo
ya es mañana en UTC.

Se inyecta en los servicios en vez de llamar a date.today() por todas
partes, así los tests pueden fijar el día con FixedClock.
"""

import os
from datetime import date, datetime, timedelta
from typing import Optional

import pytz

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/Sao_Paulo")


class Clock:
    """Reloj real: hoy y ahora en la zona horaria indicada"""

    def __init__(self, timezone: Optional[str] = None):
        self.timezone = pytz.timezone(timezone or DEFAULT_TIMEZONE)

    def now(self) -> datetime:
        """Momento actual en UTC sin tzinfo (así se guardan los timestamps)"""
        return datetime.utcnow()

    def today(self) -> date:
        return datetime.now(self.timezone).date()

    def yesterday(self) -> date:
        return self.today() - timedelta(days=1)

    def for_timezone(self, timezone: Optional[str]) -> "Clock":
        """Mismo reloj, pero en la zona horaria de otro usuario"""
        return Clock(timezone or self.timezone.zone)


class FixedClock(Clock):
    """Reloj parado en una fecha concreta (tests y recálculos)"""

    def __init__(self, today: date, now: Optional[datetime] = None):
        super().__init__("UTC")
        self._today = today
        self._now = now

    def now(self) -> datetime:
        if self._now is not None:
            return self._now
        return datetime(self._today.year, self._today.month, self._today.day, 12, 0, 0)

    def today(self) -> date:
        return self._today

    def advance(self, days: int = 1) -> None:
        """Avanza el reloj N días"""
        self._today = self._today + timedelta(days=days)
        self._now = None

    def for_timezone(self, timezone: Optional[str]) -> "Clock":
        return self

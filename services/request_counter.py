"""
Счётчик запросов авторизации (RPS / RPM).

Два окна фиксированной длины: секунда и минута. Окно сбрасывается
первым запросом после своего истечения.
"""
import time
from typing import Callable, Optional


class RequestCounter:
    """Счётчик запросов за текущую секунду и минуту"""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self.reset()

    def reset(self):
        now = self._clock()
        self._rps = 0
        self._rpm = 0
        self._rps_started = now
        self._rpm_started = now

    def hit(self):
        """Учесть один запрос"""
        now = self._clock()

        if now - self._rps_started >= 1.0:
            self._rps = 1
            self._rps_started = now
        else:
            self._rps += 1

        if now - self._rpm_started >= 60.0:
            self._rpm = 1
            self._rpm_started = now
        else:
            self._rpm += 1

    def get_stats(self) -> dict:
        """Текущие значения (истёкшее окно без запросов даёт 0)"""
        now = self._clock()
        return {
            "rps": self._rps if now - self._rps_started < 1.0 else 0,
            "rpm": self._rpm if now - self._rpm_started < 60.0 else 0,
        }

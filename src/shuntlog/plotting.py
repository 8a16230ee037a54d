from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, List, Optional

import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation

from .records import ConvertedSample

CHANNEL_COLORS = ("tab:blue", "tab:orange", "tab:green", "tab:red")


class LivePlotter:
    """Realtime 2×2 dashboard of shunt current per channel."""

    def __init__(self, *, channels: int = 1, window: int = 500, refresh_ms: int = 500) -> None:
        self._logger = logging.getLogger(__name__)
        self._channels = channels
        self._lock = threading.Lock()
        self._t0: Optional[float] = None
        self._time: Deque[float] = deque(maxlen=window)
        self._currents: List[Deque[float]] = [deque(maxlen=window) for _ in range(4)]
        self._running = True
        self._autoscale_every = 5
        self._autoscale_counter = 0

        self.fig, axes = plt.subplots(2, 2, figsize=(11, 6), sharex=True)
        self.axes = [axis for row in axes for axis in row]
        self.lines = []
        for index, (axis, color) in enumerate(zip(self.axes, CHANNEL_COLORS), start=1):
            axis.set_title(f"ch{index}" if index <= channels else f"ch{index} (disabled)")
            axis.set_ylabel("Current [A]")
            line, = axis.plot([], [], color=color)
            self.lines.append(line)
        for axis in self.axes[2:]:
            axis.set_xlabel("Time (s)")

        self._anim = FuncAnimation(self.fig, self._update_plot, interval=refresh_ms, blit=False)

        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self) -> None:  # pragma: no cover - GUI loop
        plt.show(block=False)
        while self._running:
            try:
                plt.pause(0.1)
            except Exception:
                break

    def on_sample(self, sample: ConvertedSample) -> None:
        with self._lock:
            now = time.monotonic()
            if self._t0 is None:
                self._t0 = now
            self._time.append(now - self._t0)
            for series, current in zip(self._currents, sample.currents):
                series.append(current)

    def _update_plot(self, _frame):  # pragma: no cover - GUI callback
        with self._lock:
            times = list(self._time)
            if not times:
                return tuple(self.lines)
            series = [list(values) for values in self._currents]

        xmin = times[0]
        xmax = times[-1] if times[-1] > xmin else xmin + 1.0
        for axis, line, values in zip(self.axes, self.lines, series):
            if not values:
                continue
            line.set_data(times[-len(values):], values)
            axis.set_xlim(xmin, xmax)

        self._autoscale_counter = (self._autoscale_counter + 1) % self._autoscale_every
        if self._autoscale_counter == 0:
            for axis in self.axes[: self._channels]:
                axis.relim()
                axis.autoscale_view()

        return tuple(self.lines)

    def close(self) -> None:
        self._running = False
        try:
            plt.close(self.fig)
        except Exception:
            self._logger.debug("Failed to close live plot", exc_info=True)
        thread = getattr(self, "_thread", None)
        if thread and thread.is_alive():
            thread.join(timeout=1.0)

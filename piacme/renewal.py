#!/usr/bin/env python3
#
# piacme/renewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Self-rescheduling background loop for certificate renewal checks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypedDict

from .errors import AgreementRequiredError

_log = logging.getLogger(__name__)

__all__ = ["RenewalScheduler", "RenewalStatus"]

# Minimum allowed interval to prevent CPU-pinning tight loops
_MIN_INTERVAL = 1.0


class RenewalStatus(TypedDict):
	"""Status information for the renewal loop."""
	interval_seconds: float
	last_check: str | None  # ISO timestamp of last completed cycle
	last_renewal: str | None  # ISO timestamp of last cycle that renewed
	is_running: bool  # loop task alive
	in_progress: bool  # a cycle is executing right now
	run_count: int
	renew_count: int
	skip_count: int


class RenewalScheduler:
	"""Wait ``interval_seconds``, run one cycle, repeat until stopped.

	``cycle`` returns True when it renewed the certificate; ``on_renew`` is
	then invoked exactly once for that cycle. The loop is single-flight: a
	cycle is never started while another one (including one triggered via
	:meth:`run_once`) is still executing.

	Usage::

		scheduler = RenewalScheduler(720 * 60, manager.renewal_cycle, on_renew=reload_tls)
		await scheduler.start()
		...
		await scheduler.stop_graceful()
	"""

	def __init__(
		self,
		interval_seconds: float,
		cycle: Callable[[], Awaitable[bool]],
		*,
		on_renew: Optional[Callable[[], object]] = None,
	) -> None:
		if interval_seconds < _MIN_INTERVAL:
			raise ValueError(
				f"interval_seconds must be ≥ {_MIN_INTERVAL}, got {interval_seconds}"
			)
		self.interval_seconds = interval_seconds
		self.cycle = cycle
		self.on_renew = on_renew
		self._task: asyncio.Task | None = None
		self._stop_event: asyncio.Event | None = None
		self._in_progress = False
		self.last_check: datetime | None = None
		self.last_renewal: datetime | None = None
		self.run_count = 0
		self.renew_count = 0
		self.skip_count = 0

	@property
	def is_running(self) -> bool:
		return self._task is not None and not self._task.done()

	@property
	def in_progress(self) -> bool:
		return self._in_progress

	async def start(self) -> None:
		"""Start the loop as a background task (needs a running event loop)."""
		if self.is_running:
			return
		self._stop_event = asyncio.Event()
		self._task = asyncio.create_task(self._run_loop(self._stop_event))
		_log.info("RENEWAL monitor started interval=%.0fs", self.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Signal the loop to stop, cancelling it if it does not exit in time."""
		task = self._task
		if task is None:
			return
		self._task = None
		if self._stop_event is not None:
			self._stop_event.set()

		if not task.done():
			_, not_done = await asyncio.wait([task], timeout=timeout)
			if not_done:
				_log.warning("RENEWAL cycle did not stop gracefully, forcing cancel")
				task.cancel()
		await asyncio.gather(task, return_exceptions=True)
		_log.info("RENEWAL monitor stopped")

	async def wait(self) -> None:
		"""Block until the loop exits (stopped, or gave up for manual action)."""
		task = self._task
		if task is not None:
			await asyncio.gather(task, return_exceptions=True)

	async def run_once(self) -> Optional[bool]:
		"""Run one cycle now. Returns None if a cycle is already in progress."""
		if self._in_progress:
			self.skip_count += 1
			_log.warning("RENEWAL cycle already in progress, skipping")
			return None

		self._in_progress = True
		try:
			renewed = bool(await self.cycle())
		finally:
			self._in_progress = False

		now = datetime.now(timezone.utc)
		self.last_check = now
		self.run_count += 1
		if renewed:
			self.last_renewal = now
			self.renew_count += 1
			if self.on_renew is not None:
				result = self.on_renew()
				if asyncio.iscoroutine(result):
					await result
		_log.info("RENEWAL check complete (run #%d, renewed=%s)", self.run_count, renewed)
		return renewed

	async def _run_loop(self, stop_event: asyncio.Event) -> None:
		"""Wait for the interval or the stop signal, then run one cycle."""
		try:
			while not stop_event.is_set():
				try:
					await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
					# Stop signaled
					break
				except asyncio.TimeoutError:
					pass

				try:
					await self.run_once()
				except asyncio.CancelledError:
					raise
				except AgreementRequiredError as exc:
					_log.critical("RENEWAL monitor stopped, manual action required: %s", exc)
					return
				except Exception:
					# Never let one failed attempt break the loop
					_log.exception("RENEWAL cycle failed")
		except asyncio.CancelledError:
			_log.debug("RENEWAL monitor cancelled")

	def get_status(self) -> RenewalStatus:
		return {
			"interval_seconds": self.interval_seconds,
			"last_check": self.last_check.isoformat() if self.last_check else None,
			"last_renewal": self.last_renewal.isoformat() if self.last_renewal else None,
			"is_running": self.is_running,
			"in_progress": self._in_progress,
			"run_count": self.run_count,
			"renew_count": self.renew_count,
			"skip_count": self.skip_count,
		}

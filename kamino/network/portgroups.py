"""Port group number allocation for pod networks.

Every pod gets a distributed port group named ``<number>_<suffix>`` whose
VLAN id is the same number. Numbers come from two disjoint ranges, one
for standard pods and one for competition pods.

The allocation table maps number -> port group name. An entry exists while
the port group exists on the platform or while a provisioning call that
reserved it is in flight. Entries are added by reserve() and by resync()
(which discovers port groups already on the platform, e.g. after a
restart), and removed only by release() during pod teardown.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading

from kamino.config import settings
from kamino.errors import ExhaustedRangeError, ObjectNotFoundError
from kamino.metrics import port_groups_reserved
from kamino.models import PortGroupRange
from kamino.naming import port_group_name, port_group_pattern
from kamino.vsphere.platform import Platform

logger = logging.getLogger(__name__)

_LEADING_NUMBER = re.compile(r"^\d+")


class PortGroupAllocator:
    """Thread-safe allocator of port group numbers.

    All reads and writes of the table happen under one lock, so concurrent
    reserve() calls never hand out the same number.
    """

    def __init__(
        self,
        platform: Platform,
        standard: PortGroupRange,
        competition: PortGroupRange,
        suffix: str,
    ):
        if standard.overlaps(competition):
            raise ValueError(
                f"Port group ranges overlap: standard [{standard.start}, {standard.end}) "
                f"and competition [{competition.start}, {competition.end})"
            )
        self._platform = platform
        self.standard = standard
        self.competition = competition
        self.suffix = suffix
        self._allocated: dict[int, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, platform: Platform) -> PortGroupAllocator:
        return cls(
            platform,
            standard=PortGroupRange(settings.starting_port_group, settings.ending_port_group),
            competition=PortGroupRange(
                settings.competition_start_port_group, settings.competition_end_port_group
            ),
            suffix=settings.port_group_suffix,
        )

    def range_for(self, competition: bool) -> PortGroupRange:
        return self.competition if competition else self.standard

    def reserve(self, competition: bool = False) -> int:
        """Reserve the lowest free number in the standard or competition range.

        Raises:
            ExhaustedRangeError: every number in the range is taken
        """
        pg_range = self.range_for(competition)
        with self._lock:
            for number in pg_range:
                if number not in self._allocated:
                    self._allocated[number] = port_group_name(number, self.suffix)
                    port_groups_reserved.set(len(self._allocated))
                    break
            else:
                raise ExhaustedRangeError(pg_range.start, pg_range.end)

        logger.info(f"Reserved port group {number} ({'competition' if competition else 'standard'})")
        return number

    def release(self, number: int) -> None:
        """Return a number to the pool. Releasing a free number is a no-op."""
        with self._lock:
            removed = self._allocated.pop(number, None)
            port_groups_reserved.set(len(self._allocated))
        if removed is not None:
            logger.info(f"Released port group {number}")

    def is_reserved(self, number: int) -> bool:
        with self._lock:
            return number in self._allocated

    def allocations(self) -> dict[int, str]:
        """Copy of the allocation table."""
        with self._lock:
            return dict(self._allocated)

    def resync(self) -> int:
        """Add port groups that exist on the platform to the table.

        Stale entries are never removed here; only teardown releases.

        Returns:
            Number of entries that were not already in the table
        """
        try:
            networks = self._platform.list_networks(port_group_pattern(self.suffix))
        except ObjectNotFoundError:
            networks = []

        discovered = 0
        with self._lock:
            for network in networks:
                match = _LEADING_NUMBER.match(network.name)
                if not match:
                    continue
                number = int(match.group())
                if number not in self.standard and number not in self.competition:
                    continue
                if number not in self._allocated:
                    discovered += 1
                self._allocated[number] = network.name
            total = len(self._allocated)
            port_groups_reserved.set(total)

        logger.info(f"Found {total} port groups ({discovered} new)")
        return discovered

    async def run_resync_loop(self, interval: float | None = None) -> None:
        """Resync forever on a fixed cadence; failures are logged, not fatal."""
        interval = settings.resync_interval if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.resync)
            except Exception as e:
                logger.error(f"Error finding taken port groups: {e}")

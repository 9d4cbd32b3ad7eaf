# AppStack - Port Allocator

import logging
import socket
import threading
from typing import Dict, List, Optional, Set, Union

from appstack.core.config import Settings
from appstack.core.errors import NoPortsAvailable, PortUnavailable
from appstack.core.models import PortAllocation, PortInfo, PortRequirements
from appstack.core.registry import Registry

logger = logging.getLogger("appstack.ports")

# Mail, DNS, SSH, web, database and PHP-FPM ports that are never handed out,
# whether or not the matching service is running right now.
SYSTEM_RESERVED_PORTS = frozenset(
    {
        21, 22, 23, 25, 53, 80, 110, 143, 443, 993, 995,
        3306, 5432, 6379, 27017,
        9000, 9001,
    }
)

# Tried first when suggesting ports.
COMMON_PORTS = (8000, 8080, 8888, 3000, 4000, 5000, 8001, 8002, 8003, 8004)


def probe_port(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if ``port`` can be bound on ``host`` right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out non-conflicting TCP ports and records reservations.

    The in-memory reservation map (port -> owner) is rebuilt from the
    registry by ``reload()`` and written back on every reserve/release.
    """

    def __init__(
        self,
        registry: Registry,
        settings: Settings,
        system_reserved: Optional[Set[int]] = None,
    ):
        self.registry = registry
        self.host = settings.bind_host
        self.range_start = settings.port_range_start
        self.range_end = settings.port_range_end
        self.system_reserved = frozenset(
            SYSTEM_RESERVED_PORTS if system_reserved is None else system_reserved
        )
        self._owners: Dict[int, Optional[str]] = {}
        self._lock = threading.RLock()

    def reload(self) -> None:
        """Rebuild the reservation cache from the registry."""
        with self._lock:
            self._owners = self.registry.get_port_owners()
        logger.info("Loaded %d reserved ports", len(self._owners))

    # -- checks --------------------------------------------------------------

    def _probe(self, port: int) -> bool:
        return probe_port(port, self.host)

    def _range(self, start: Optional[int], end: Optional[int]) -> range:
        start = self.range_start if start is None else start
        end = self.range_end if end is None else end
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        return range(start, end + 1)

    def is_port_available(self, port: int) -> bool:
        if port in self.system_reserved:
            return False
        with self._lock:
            if port in self._owners:
                return False
        return self._probe(port)

    # -- scanning ------------------------------------------------------------

    def find_available(
        self, start: Optional[int] = None, end: Optional[int] = None
    ) -> int:
        """Return the lowest available port in the inclusive range."""
        ports = self._range(start, end)
        with self._lock:
            for port in ports:
                if self.is_port_available(port):
                    return port
        raise NoPortsAvailable(ports.start, ports.stop - 1)

    def find_n_available(
        self, count: int, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[int]:
        """Return ``count`` available ports in ascending order, reserving none."""
        if count < 1:
            raise ValueError("count must be at least 1")
        ports = self._range(start, end)
        found: List[int] = []
        with self._lock:
            for port in ports:
                if self.is_port_available(port):
                    found.append(port)
                    if len(found) == count:
                        return found
        raise NoPortsAvailable(ports.start, ports.stop - 1, count)

    # -- reservations ----------------------------------------------------------

    def reserve(self, port: int, owner: Optional[str] = None) -> int:
        with self._lock:
            if port in self.system_reserved:
                raise PortUnavailable(port, "reserved for system services")
            if port in self._owners:
                raise PortUnavailable(port, "already reserved")
            if not self._probe(port):
                raise PortUnavailable(port, "in use by another process")
            self.registry.add_reserved_port(port, owner)
            self._owners[port] = owner
        logger.info("Reserved port %d%s", port, f" for {owner}" if owner else "")
        return port

    def release(self, port: int, owner: Optional[str] = None) -> bool:
        """Release ``port``; returns False when ``owner`` does not hold it.

        Without an owner the release is unconditional.
        """
        with self._lock:
            if port not in self._owners:
                return False
            current = self._owners[port]
            if owner is not None and current not in (None, owner):
                logger.warning(
                    "Port %d is held by %s, not releasing for %s", port, current, owner
                )
                return False
            self.registry.remove_reserved_port(port, owner)
            self._owners.pop(port, None)
        logger.info("Released port %d", port)
        return True

    def release_all(self, owner: str) -> List[int]:
        """Release every port held by ``owner``; returns the released ports."""
        with self._lock:
            ports = sorted(p for p, o in self._owners.items() if o == owner)
            for port in ports:
                self.release(port, owner)
        if ports:
            logger.info("Released %d ports for %s", len(ports), owner)
        return ports

    def allocate_for_requirements(
        self,
        owner: str,
        requirements: Union[PortRequirements, Dict[str, int]],
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> PortAllocation:
        """Find, partition and reserve every requested port, or none of them."""
        if not isinstance(requirements, PortRequirements):
            requirements = PortRequirements(**requirements)
        total = requirements.total
        if total == 0:
            return PortAllocation(owner=owner)

        with self._lock:
            ports = self.find_n_available(total, start, end)
            reserved: List[int] = []
            try:
                for port in ports:
                    reserved.append(self.reserve(port, owner))
            except PortUnavailable:
                for port in reserved:
                    self.release(port, owner)
                raise

        web_end = requirements.web
        db_end = web_end + requirements.database
        cache_end = db_end + requirements.cache
        allocation = PortAllocation(
            owner=owner,
            web=ports[:web_end],
            database=ports[web_end:db_end],
            cache=ports[db_end:cache_end],
            custom=ports[cache_end:],
        )
        logger.info("Allocated ports for %s: %s", owner, allocation.all_ports)
        return allocation

    # -- reporting -----------------------------------------------------------

    def get_reserved_ports(self) -> List[int]:
        with self._lock:
            return sorted(self._owners)

    def get_app_ports(self, owner: str) -> List[PortInfo]:
        with self._lock:
            ports = sorted(p for p, o in self._owners.items() if o == owner)
        return [self.port_info(p) for p in ports]

    def port_info(self, port: int) -> PortInfo:
        with self._lock:
            reserved = port in self._owners
            owner = self._owners.get(port)
        system = port in self.system_reserved
        bindable = self._probe(port)
        return PortInfo(
            port=port,
            available=bindable and not reserved and not system,
            reserved=reserved,
            system=system,
            in_use=not bindable,
            owner=owner,
        )

    def scan_used_ports(
        self, start: Optional[int] = None, end: Optional[int] = None
    ) -> List[PortInfo]:
        return [
            info
            for info in (self.port_info(p) for p in self._range(start, end))
            if not info.available
        ]

    def scan_available_ports(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        max_results: int = 50,
    ) -> List[int]:
        """Available ports in the range, lowest first; nothing is reserved."""
        found: List[int] = []
        for port in self._range(start, end):
            if len(found) >= max_results:
                break
            if self.is_port_available(port):
                found.append(port)
        return found

    def suggest_ports(self, count: int = 5, start: Optional[int] = None) -> List[int]:
        """Suggest free ports, preferring familiar development ports."""
        ports = self._range(start, None)
        suggestions: List[int] = []
        for port in COMMON_PORTS:
            if len(suggestions) >= count:
                return suggestions
            if port in ports and self.is_port_available(port):
                suggestions.append(port)
        for port in ports:
            if len(suggestions) >= count:
                break
            if port not in suggestions and self.is_port_available(port):
                suggestions.append(port)
        return suggestions

    def statistics(self) -> Dict[str, int]:
        ports = self._range(None, None)
        used = self.scan_used_ports()
        return {
            "range_start": ports.start,
            "range_end": ports.stop - 1,
            "total": len(ports),
            "available": len(ports) - len(used),
            "used": len(used),
            "reserved": len(self.get_reserved_ports()),
            "system_reserved": sum(1 for p in self.system_reserved if p in ports),
        }

    def set_port_range(self, start: int, end: int) -> None:
        if start >= end:
            raise ValueError("Start port must be less than end port")
        if start < 1024:
            raise ValueError("Start port should be above 1024 to avoid system ports")
        if end > 65535:
            raise ValueError("End port cannot exceed 65535")
        self.range_start = start
        self.range_end = end
        logger.info("Port range set to %d-%d", start, end)

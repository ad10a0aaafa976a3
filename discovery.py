"""
Discovers debuggable targets on the local CDP ports.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import requests

logger = logging.getLogger("autoaccept.discovery")

PREFERRED_PORT = 9222
DEFAULT_PORT_RANGE = (9000, 9030)
PROBE_TIMEOUT = 2.0  # seconds

# Only page/iframe targets host the DOM with clickable controls.
TARGET_PRIORITY = {'page': 0, 'iframe': 1, 'other': 2, 'worker': 3}
_WORKER_TYPES = {'worker', 'service_worker', 'shared_worker'}


@dataclass(frozen=True)
class Target:
    id: str
    url: str
    title: str
    kind: str
    ws_url: str
    port: int

    @classmethod
    def from_descriptor(cls, descriptor: Dict, port: int) -> Optional['Target']:
        ws_url = descriptor.get('webSocketDebuggerUrl')
        if not ws_url or not descriptor.get('id'):
            return None
        raw_type = (descriptor.get('type') or '').lower()
        if raw_type in _WORKER_TYPES:
            kind = 'worker'
        elif raw_type in ('page', 'iframe'):
            kind = raw_type
        else:
            kind = 'other'
        return cls(
            id=descriptor['id'],
            url=descriptor.get('url') or '',
            title=descriptor.get('title') or '',
            kind=kind,
            ws_url=ws_url,
            port=port,
        )

    @property
    def has_dom(self) -> bool:
        return self.kind != 'worker'


class TargetScanner:
    """Probes the preferred port plus a port range, each with its own short timeout."""

    def __init__(self, host: str = '127.0.0.1', port_range=DEFAULT_PORT_RANGE,
                 preferred_port: int = PREFERRED_PORT, timeout: float = PROBE_TIMEOUT,
                 max_concurrency: int = 8):
        self.host = host
        self.port_range = port_range
        self.preferred_port = preferred_port
        self.timeout = timeout
        self.max_concurrency = max_concurrency

    def ports(self) -> List[int]:
        start, end = self.port_range
        ports = [self.preferred_port]
        ports.extend(p for p in range(start, end + 1) if p != self.preferred_port)
        return ports

    def fetch_targets(self, port: int) -> List[Dict]:
        response = requests.get(f"http://{self.host}:{port}/json/list", timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else []

    async def probe(self, port: int, semaphore: Optional[asyncio.Semaphore] = None) -> List[Target]:
        """Targets on one port. A port with nothing usable yields an empty list."""
        async with semaphore or asyncio.Semaphore(1):
            try:
                descriptors = await asyncio.to_thread(self.fetch_targets, port)
            except requests.RequestException as e:
                logger.debug(f"No CDP endpoint on port {port}: {e.__class__.__name__}")
                return []
            except ValueError as e:
                logger.debug(f"Unparseable CDP response on port {port}: {e}")
                return []

        targets = [t for t in (Target.from_descriptor(d, port) for d in descriptors if isinstance(d, dict)) if t]
        if targets:
            logger.debug(f"Port {port}: {len(descriptors)} raw target(s), {len(targets)} usable")
        return targets

    async def discover(self) -> List[Target]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(*(self.probe(port, semaphore) for port in self.ports()))
        return sort_targets(t for port_targets in results for t in port_targets)


def sort_targets(targets: Iterable[Target]) -> List[Target]:
    seen = set()
    unique = []
    for target in targets:
        if target.id in seen:
            continue
        seen.add(target.id)
        unique.append(target)
    return sorted(unique, key=lambda t: TARGET_PRIORITY.get(t.kind, TARGET_PRIORITY['other']))

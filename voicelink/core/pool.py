from __future__ import annotations

import asyncio
from collections import deque
from functools import partial
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence

from ..config import ManagerConfig, NodeConfig
from ..logging_utils import get_logger
from .events import EventEmitter, NodeEvent
from .node import BackendNode, NodeState
from .scheduler import Scheduler

_LOGGER = get_logger(__name__)

FailoverJob = Callable[[], None]


class NodePool(EventEmitter):
    """The set of voice nodes, keyed by host.

    Node notifications are re-emitted with the originating node as the first
    argument so a single subscriber can serve the whole pool.
    """

    def __init__(
        self,
        config: ManagerConfig,
        *,
        scheduler: Scheduler,
        nodes: Sequence[NodeConfig] = (),
        shard_count: int = 1,
    ) -> None:
        super().__init__()
        self.nodes: Dict[str, BackendNode] = {}
        self.failover_queue: Deque[FailoverJob] = deque()
        self.failover_rate = config.failover_rate_seconds
        self.failover_limit = config.failover_limit
        self.regions = config.regions
        self.default_region = config.default_region
        self.shard_count = shard_count
        self.user_id: Optional[str] = None
        self._scheduler = scheduler
        self._failover_handle: Optional[asyncio.TimerHandle] = None
        self._started = False

        for node_config in nodes:
            self.add_node(node_config)

    def __iter__(self) -> Iterator[BackendNode]:
        return iter(list(self.nodes.values()))

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, host: str) -> Optional[BackendNode]:
        return self.nodes.get(host)

    def add_node(self, config: NodeConfig) -> BackendNode:
        node = BackendNode(
            config,
            scheduler=self._scheduler,
            user_id=self.user_id,
            shard_count=self.shard_count,
        )
        return self.register(node)

    def register(self, node: BackendNode) -> BackendNode:
        if node.host in self.nodes:
            raise ValueError(f"Voice node '{node.host}' is already registered")

        node.on(NodeEvent.READY, partial(self.emit, NodeEvent.READY, node))
        node.on(NodeEvent.DISCONNECT, partial(self.emit, NodeEvent.DISCONNECT, node))
        node.on(NodeEvent.MESSAGE, partial(self.emit, NodeEvent.MESSAGE, node))
        node.on(NodeEvent.ERROR, partial(self.emit, NodeEvent.ERROR, node))
        self.nodes[node.host] = node

        if self._started and node.state is NodeState.DISCONNECTED:
            node.user_id = self.user_id
            node.connect()
        return node

    def remove_node(self, host: str) -> Optional[BackendNode]:
        if not host:
            return None
        node = self.nodes.pop(host, None)
        if node is None:
            return None
        node.destroy()
        _LOGGER.info("Removed voice node %s", host)
        self.emit(NodeEvent.DISCONNECT, node)
        return node

    def start(self, user_id: Optional[str]) -> None:
        self.user_id = user_id
        self._started = True
        for node in self:
            node.user_id = user_id
            if node.state is NodeState.DISCONNECTED:
                node.connect()

    async def close(self) -> None:
        self._started = False
        if self._failover_handle is not None:
            self._failover_handle.cancel()
            self._failover_handle = None
        self.failover_queue.clear()
        nodes = list(self)
        if nodes:
            await asyncio.gather(*(node.close() for node in nodes))

    def available(self) -> List[BackendNode]:
        return [node for node in self if node.state is NodeState.CONNECTED]

    def select_node(self, region: Optional[str] = None) -> Optional[BackendNode]:
        candidates = self.available()
        if region:
            regional = [node for node in candidates if node.region == region]
            if regional:
                candidates = regional
        if not candidates:
            return None
        return min(candidates, key=lambda node: node.load)

    def region_for(self, hint: Optional[str]) -> str:
        """Map a voice endpoint or region name onto a configured region key."""

        if not hint:
            return self.default_region

        endpoint = hint.lower().replace("vip-", "")
        for key, prefixes in self.regions.items():
            regional = [node for node in self if node.region == key]
            if not any(node.state is NodeState.CONNECTED for node in regional):
                continue
            if any(endpoint.startswith(prefix) for prefix in prefixes):
                return key

        return self.default_region

    def queue_failover(self, job: FailoverJob) -> None:
        if self.failover_queue or self._failover_handle is not None:
            self.failover_queue.append(job)
            return
        self._process_failovers([job])

    def _process_failovers(self, jobs: List[FailoverJob]) -> None:
        for job in jobs:
            try:
                job()
            except Exception:
                _LOGGER.exception("Failover job %r failed", job)
        self._failover_handle = self._scheduler.call_later(
            self.failover_rate, self._check_failover_queue
        )

    def _check_failover_queue(self) -> None:
        self._failover_handle = None
        if not self.failover_queue:
            return
        batch = min(self.failover_limit, len(self.failover_queue))
        jobs = [self.failover_queue.popleft() for _ in range(batch)]
        self._process_failovers(jobs)


__all__ = ["NodePool", "FailoverJob"]

"""
Subscription Registry

Tracks which single topic every connected UI client currently wants and
derives the aggregate demand the polling scheduler is driven by. Every
mutation goes through one recompute step that hands the fresh demand
snapshot to the change callback.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, NamedTuple, Optional

from models import SubscribeResult, Topic
from utils import CONNECTED_CLIENTS, logger

NOT_READY = "Not ready yet, try again later"


class PollKey(NamedTuple):
    """What a polling timer is keyed by: a topic, plus the id for `container`"""

    topic: Topic
    container_id: Optional[str] = None

    def __str__(self):
        if self.container_id:
            return f"{self.topic.value}:{self.container_id}"
        return self.topic.value


@dataclass
class Subscription:
    client_id: str
    topic: Topic
    container_id: Optional[str] = None
    browser_ips: List[str] = field(default_factory=list)
    last_seen: float = 0.0

    @property
    def key(self) -> PollKey:
        return PollKey(self.topic, self.container_id if self.topic is Topic.CONTAINER else None)


@dataclass(frozen=True)
class DemandSnapshot:
    """Subscriber count per static topic and the set of watched container ids"""

    topics: Dict[Topic, int] = field(default_factory=dict)
    containers: FrozenSet[str] = frozenset()

    def keys(self) -> FrozenSet[PollKey]:
        keys = {PollKey(topic) for topic, count in self.topics.items() if count > 0}
        keys.update(PollKey(Topic.CONTAINER, container_id) for container_id in self.containers)
        return frozenset(keys)

    def wants(self, key: PollKey) -> bool:
        if key.topic is Topic.CONTAINER:
            return key.container_id in self.containers
        return self.topics.get(key.topic, 0) > 0


DemandCallback = Callable[[DemandSnapshot, Optional[PollKey]], None]


class SubscriptionRegistry:
    """One subscription per client id, plus the demand derived from them"""

    def __init__(
        self,
        heartbeat_interval: int = 120000,
        on_change: Optional[DemandCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.heartbeat_interval = heartbeat_interval  # milliseconds
        self.on_change = on_change
        self.clock = clock
        self.ready = False
        self._subscriptions: Dict[str, Subscription] = {}
        self._demand = DemandSnapshot()

    def mark_ready(self):
        """Called once the backend finished its startup checks"""
        self.ready = True

    def subscribe(
        self,
        client_id: str,
        topic: Topic,
        container_id: Optional[str] = None,
        browser_ips: Optional[List[str]] = None,
    ) -> SubscribeResult:
        if not self.ready:
            return SubscribeResult(accepted=False, error=NOT_READY)

        topic = Topic(topic)
        if topic is Topic.CONTAINER and not container_id:
            return SubscribeResult(accepted=False, error="No container specified")

        existing = self._subscriptions.get(client_id)
        subscription = Subscription(
            client_id=client_id,
            topic=topic,
            container_id=container_id if topic is Topic.CONTAINER else None,
            browser_ips=list(browser_ips or []),
            last_seen=self.clock(),
        )
        self._subscriptions[client_id] = subscription

        changed = existing is None or existing.key != subscription.key
        if changed:
            logger.info("Client subscribed", client_id=client_id, topic=str(subscription.key))
        self._recompute(subscription.key if changed else None)
        return SubscribeResult(accepted=True, heartbeat=self.heartbeat_interval)

    def unsubscribe(self, client_id: str):
        """Forget a client; unknown ids are fine"""
        if self._subscriptions.pop(client_id, None):
            logger.info("Client unsubscribed", client_id=client_id)
        self._recompute(None)

    def expire(self, now: Optional[float] = None) -> List[str]:
        """Drop clients that did not resubscribe within the heartbeat interval"""
        now = self.clock() if now is None else now
        limit = self.heartbeat_interval / 1000
        expired = [
            client_id
            for client_id, subscription in self._subscriptions.items()
            if now - subscription.last_seen > limit
        ]
        for client_id in expired:
            logger.info("Client heartbeat expired", client_id=client_id)
            del self._subscriptions[client_id]
        if expired:
            self._recompute(None)
        return expired

    def current_demand(self) -> DemandSnapshot:
        return self._demand

    def get(self, client_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(client_id)

    def client_ids(self) -> List[str]:
        return list(self._subscriptions)

    def subscribers_for(self, key: PollKey) -> List[str]:
        return [
            client_id
            for client_id, subscription in self._subscriptions.items()
            if subscription.key == key
        ]

    def browser_ips(self, key: Optional[PollKey] = None) -> List[str]:
        """Distinct addresses the browsers of (the subscribers of key) reach the host with"""
        ips: List[str] = []
        for subscription in self._subscriptions.values():
            if key is not None and subscription.key != key:
                continue
            for ip in subscription.browser_ips:
                if ip not in ips:
                    ips.append(ip)
        return ips

    def _recompute(self, changed: Optional[PollKey]):
        topics = Counter(
            subscription.topic
            for subscription in self._subscriptions.values()
            if subscription.topic is not Topic.CONTAINER
        )
        containers = frozenset(
            subscription.container_id
            for subscription in self._subscriptions.values()
            if subscription.topic is Topic.CONTAINER
        )
        self._demand = DemandSnapshot(topics=dict(topics), containers=containers)
        CONNECTED_CLIENTS.set(len(self._subscriptions))
        if self.on_change:
            self.on_change(self._demand, changed)

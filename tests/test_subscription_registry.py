import random

from models import Topic
from subscription_registry import DemandSnapshot, PollKey, SubscriptionRegistry


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSubscriptionRegistry:
    """Per-client subscriptions and the demand derived from them"""

    def setup_method(self):
        self.changes = []
        self.clock = FakeClock()
        self.registry = SubscriptionRegistry(
            heartbeat_interval=120000,
            on_change=lambda snapshot, changed: self.changes.append((snapshot, changed)),
            clock=self.clock,
        )

    def test_not_ready_before_startup(self):
        result = self.registry.subscribe("c1", Topic.IMAGES)
        assert result.accepted is False
        assert result.error
        assert self.registry.current_demand().keys() == frozenset()
        assert self.changes == []

    def test_subscribe_returns_heartbeat(self):
        self.registry.mark_ready()
        result = self.registry.subscribe("c1", Topic.IMAGES)
        assert result.accepted is True
        assert result.heartbeat == 120000

    def test_subscribe_reports_changed_key(self):
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.CONTAINERS)
        snapshot, changed = self.changes[-1]
        assert changed == PollKey(Topic.CONTAINERS)
        assert snapshot.topics[Topic.CONTAINERS] == 1

    def test_resubscribe_same_topic_is_not_a_change(self):
        """A heartbeat resubscribe only refreshes last_seen"""
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.INFO)
        self.clock.now += 30
        self.registry.subscribe("c1", Topic.INFO)
        assert self.changes[-1][1] is None
        assert self.registry.get("c1").last_seen == self.clock.now

    def test_changing_topic_overwrites(self):
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.IMAGES)
        self.registry.subscribe("c1", Topic.VOLUMES)
        demand = self.registry.current_demand()
        assert demand.topics.get(Topic.IMAGES, 0) == 0
        assert demand.topics[Topic.VOLUMES] == 1
        assert self.changes[-1][1] == PollKey(Topic.VOLUMES)

    def test_container_watch(self):
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.CONTAINER, "abc")
        self.registry.subscribe("c2", Topic.CONTAINER, "abc")
        self.registry.subscribe("c3", Topic.CONTAINER, "def")
        demand = self.registry.current_demand()
        assert demand.containers == frozenset({"abc", "def"})
        assert demand.wants(PollKey(Topic.CONTAINER, "abc"))
        assert sorted(self.registry.subscribers_for(PollKey(Topic.CONTAINER, "abc"))) == ["c1", "c2"]

    def test_container_topic_needs_id(self):
        self.registry.mark_ready()
        result = self.registry.subscribe("c1", Topic.CONTAINER)
        assert result.accepted is False

    def test_unsubscribe_unknown_client(self):
        """Unknown ids never raise and leave demand untouched"""
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.IMAGES)
        before = self.registry.current_demand()
        self.registry.unsubscribe("nobody")
        self.registry.unsubscribe("nobody")
        assert self.registry.current_demand() == before

    def test_unsubscribe_removes_demand(self):
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.IMAGES)
        self.registry.unsubscribe("c1")
        assert self.registry.current_demand().keys() == frozenset()
        assert self.registry.client_ids() == []

    def test_expire_drops_silent_clients(self):
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.IMAGES)
        self.clock.now += 60
        self.registry.subscribe("c2", Topic.IMAGES)
        self.clock.now += 61

        assert self.registry.expire() == ["c1"]
        assert self.registry.client_ids() == ["c2"]
        assert self.registry.current_demand().topics[Topic.IMAGES] == 1

    def test_browser_ips_are_distinct(self):
        self.registry.mark_ready()
        self.registry.subscribe("c1", Topic.CONTAINERS, browser_ips=["192.168.1.10"])
        self.registry.subscribe("c2", Topic.CONTAINERS, browser_ips=["192.168.1.10", "10.0.0.2"])
        self.registry.subscribe("c3", Topic.IMAGES, browser_ips=["172.16.0.1"])
        assert self.registry.browser_ips(PollKey(Topic.CONTAINERS)) == ["192.168.1.10", "10.0.0.2"]

    def test_demand_converges_for_any_order(self):
        """The set of demanded keys only depends on the final subscriptions"""
        self.registry.mark_ready()
        topics = [Topic.INFO, Topic.IMAGES, Topic.CONTAINERS, Topic.NETWORKS, Topic.VOLUMES]
        rng = random.Random(42)
        final = {}
        for _ in range(300):
            client_id = f"c{rng.randint(0, 9)}"
            if rng.random() < 0.3:
                self.registry.unsubscribe(client_id)
                final.pop(client_id, None)
            else:
                topic = rng.choice(topics)
                self.registry.subscribe(client_id, topic)
                final[client_id] = topic

        expected = frozenset(PollKey(topic) for topic in final.values())
        assert self.registry.current_demand().keys() == expected
        for topic in topics:
            count = sum(1 for value in final.values() if value is topic)
            assert self.registry.current_demand().topics.get(topic, 0) == count


class TestDemandSnapshot:
    def test_empty(self):
        snapshot = DemandSnapshot()
        assert snapshot.keys() == frozenset()
        assert not snapshot.wants(PollKey(Topic.INFO))

    def test_zero_counts_are_not_demand(self):
        snapshot = DemandSnapshot(topics={Topic.INFO: 0, Topic.IMAGES: 2})
        assert snapshot.keys() == frozenset({PollKey(Topic.IMAGES)})

"""Tests for certbind_ctl/targets.py."""

from __future__ import annotations

import pytest

from certbind_ctl.models import HealthCheckPolicy
from certbind_ctl.providers.memory import MemoryLoadBalancerProvider
from certbind_ctl.targets import TargetRegistrar

HEALTH = HealthCheckPolicy(interval=60, timeout=5, path="/health")


@pytest.fixture
def load_balancers():
    return MemoryLoadBalancerProvider()


@pytest.fixture
def registrar(load_balancers, fast_retry):
    return TargetRegistrar(load_balancers, fast_retry, sleep=lambda _: None)


@pytest.fixture
def group(registrar):
    return registrar.ensure_target_group("api-tg", 80, "HTTP", "vpc-0a1b2c3d", HEALTH)


class TestEnsureTargetGroup:
    def test_creates_once(self, registrar, load_balancers, group):
        again = registrar.ensure_target_group("api-tg", 80, "HTTP", "vpc-0a1b2c3d", HEALTH)
        assert again.arn == group.arn
        assert again.health_check.interval == 60
        assert load_balancers.writes["create_target_group"] == 1
        assert load_balancers.writes["modify_health_check"] == 0

    def test_health_check_drift_is_corrected(self, registrar, load_balancers, group):
        tighter = HealthCheckPolicy(interval=10, timeout=5, path="/health")
        updated = registrar.ensure_target_group("api-tg", 80, "HTTP", "vpc-0a1b2c3d", tighter)
        assert updated.arn == group.arn
        assert updated.health_check == tighter
        assert load_balancers.find_target_group("api-tg").health_check == tighter
        assert load_balancers.writes["modify_health_check"] == 1


class TestRegisterTargets:
    def test_attaches_all(self, registrar, group):
        assert registrar.register_targets(group, ["i-0bbb", "i-0aaa"]) == ["i-0aaa", "i-0bbb"]
        assert registrar.attached(group.arn) == {"i-0aaa", "i-0bbb"}

    def test_duplicate_registration_leaves_one_attachment(self, registrar, load_balancers, group):
        registrar.register_targets(group, ["i-0aaa"])
        assert registrar.register_targets(group, ["i-0aaa"]) == []
        assert registrar.attached(group.arn) == {"i-0aaa"}
        assert load_balancers.writes["register_targets"] == 1

    def test_only_missing_targets_are_registered(self, registrar, load_balancers, group):
        registrar.register_targets(group, ["i-0aaa"])
        assert registrar.register_targets(group, ["i-0aaa", "i-0bbb"]) == ["i-0bbb"]
        assert load_balancers.writes["register_targets"] == 2

    def test_applies_health_check(self, registrar, load_balancers, group):
        slower = HealthCheckPolicy(interval=120, timeout=10, path="/health")
        registrar.register_targets(group, ["i-0aaa"], health_check=slower)
        assert load_balancers.find_target_group("api-tg").health_check.interval == 120

    def test_transient_errors_are_retried(self, registrar, load_balancers, group):
        load_balancers.fail_next("register_targets", 2)
        registrar.register_targets(group, ["i-0aaa"])
        assert registrar.attached(group.arn) == {"i-0aaa"}


class TestDeregisterTargets:
    def test_absent_targets_are_ignored(self, registrar, load_balancers, group):
        assert registrar.deregister_targets(group.arn, ["i-0zzz"]) == []
        assert load_balancers.writes["deregister_targets"] == 0

    def test_detaches_present_targets(self, registrar, group):
        registrar.register_targets(group, ["i-0aaa", "i-0bbb"])
        assert registrar.deregister_targets(group.arn, ["i-0bbb", "i-0zzz"]) == ["i-0bbb"]
        assert registrar.attached(group.arn) == {"i-0aaa"}

    def test_unknown_group(self, registrar):
        assert registrar.deregister_targets("arn:memory:elb:targetgroup/gone/1", ["i-0aaa"]) == []


class TestDeleteTargetGroup:
    def test_absence_tolerant(self, registrar, group):
        assert registrar.delete_target_group(group.arn) is True
        assert registrar.delete_target_group(group.arn) is False

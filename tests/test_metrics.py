"""Tests for metrics collection."""

from haddaf_sync.metrics import MetricsCollector


def test_counter_increment():
    m = MetricsCollector()
    m.inc("stale_deliveries_total")
    m.inc("stale_deliveries_total")
    assert m.get("stale_deliveries_total") == 2


def test_gauge_set():
    m = MetricsCollector()
    m.set_gauge("subscriptions_active", 3)
    assert m.get("subscriptions_active") == 3


def test_unknown_metric_is_zero():
    assert MetricsCollector().get("never_recorded_total") == 0


def test_prometheus_format():
    m = MetricsCollector()
    m.inc("notifications_sent_total", 5)
    m.set_gauge("unread_notifications", 2)
    text = m.to_prometheus()
    assert "# TYPE sync_notifications_sent_total counter" in text
    assert "sync_notifications_sent_total 5" in text
    assert "sync_unread_notifications 2" in text
    assert "sync_uptime_seconds" in text
    assert "# HELP sync_notifications_sent_total Notification records written" in text


def test_absorbed_errors_grouped_by_area():
    m = MetricsCollector()
    m.inc("stale_deliveries_total", 2)
    m.inc("subscription_errors_total")
    m.inc("recipient_discovery_failures_total")
    m.inc("notifications_sent_total", 4)

    assert m.absorbed_errors() == {"subscriptions": 3, "notifications": 1}
    assert MetricsCollector().absorbed_errors() == {}

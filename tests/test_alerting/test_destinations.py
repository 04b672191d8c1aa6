"""Tests for per-trigger destination resolution."""

from src.alerting.destinations import resolve_destinations
from src.alerting.schemas import Alert, AlertPayload, Channel, Destination


def _alert(*destinations: Destination) -> Alert:
    return Alert(alert_id="a1", code="C", label="L", destinations=list(destinations))


class TestResolveDestinations:
    def test_stored_destinations_used_by_default(self, sample_alert):
        resolved = resolve_destinations(AlertPayload(alert_code="C"), sample_alert)

        assert [(d.channel, d.address) for d in resolved] == [
            (Channel.EMAIL, "finance@example.com"),
            (Channel.SMS, "06 12 34 56 78"),
            (Channel.WEBHOOK, "https://hooks.example.com/alerts"),
        ]

    def test_payload_destinations_override(self, sample_alert):
        payload = AlertPayload(
            alert_code="C",
            destinations=[Destination(channel="email", address="other@example.com")],
        )

        resolved = resolve_destinations(payload, sample_alert)

        assert len(resolved) == 1
        assert resolved[0].channel is Channel.EMAIL
        assert resolved[0].address == "other@example.com"

    def test_empty_payload_list_overrides_to_nothing(self, sample_alert):
        payload = AlertPayload(alert_code="C", destinations=[])
        assert resolve_destinations(payload, sample_alert) == []

    def test_inactive_stored_dropped(self):
        alert = _alert(
            Destination(channel="email", address="on@example.com"),
            Destination(channel="email", address="off@example.com", active=False),
        )

        resolved = resolve_destinations(AlertPayload(alert_code="C"), alert)

        assert [d.address for d in resolved] == ["on@example.com"]

    def test_unknown_stored_channel_dropped(self):
        alert = _alert(
            Destination(channel="telegram", address="@ops"),
            Destination(channel="SMS", address="+33600000000"),
        )

        resolved = resolve_destinations(AlertPayload(alert_code="C"), alert)

        assert len(resolved) == 1
        assert resolved[0].channel is Channel.SMS

    def test_unknown_payload_channel_kept(self):
        payload = AlertPayload(
            alert_code="C",
            destinations=[Destination(channel="telegram", address="@ops")],
        )

        resolved = resolve_destinations(payload, _alert())

        assert resolved[0].channel == "telegram"

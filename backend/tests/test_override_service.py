"""
Tests for override reconciliation between device status and profile.
"""
import pytest
from datetime import timedelta

from conftest import NOW, make_device_status, make_profile


def _status(minutes_ago=10, active=True, duration=timedelta(hours=1), name="Exercise"):
    from models.schemas import OverrideStatus
    return OverrideStatus(
        timestamp=NOW - timedelta(minutes=minutes_ago),
        active=active,
        name=name,
        duration=duration
    )


class TestReconcile:
    """Truth table of the three inputs."""

    @pytest.mark.parametrize("active", [True, False])
    @pytest.mark.parametrize("profile_has_override", [True, False])
    @pytest.mark.parametrize("expired", [True, False])
    def test_truth_table(self, exercise_override, active, profile_has_override, expired):
        """Only an active, unexpired status with a profile override yields an override."""
        from services.override_service import reconcile

        status = _status(minutes_ago=90 if expired else 10, active=active)
        profile = make_profile(exercise_override if profile_has_override else None)
        result = reconcile(make_device_status(1, override_status=status), profile, NOW)

        if active and profile_has_override and not expired:
            assert result is not None
            assert result.override == exercise_override
        else:
            assert result is None

    def test_active_status_with_profile_override(self, exercise_override):
        from services.override_service import reconcile

        device_status = make_device_status(1, override_status=_status())
        result = reconcile(device_status, make_profile(exercise_override), NOW)

        assert result is not None
        assert result.override == exercise_override
        assert result.status.name == "Exercise"

    def test_no_device_status(self, exercise_override):
        from services.override_service import reconcile

        assert reconcile(None, make_profile(exercise_override), NOW) is None

    def test_device_status_without_override_status(self, exercise_override):
        from services.override_service import reconcile

        device_status = make_device_status(1)
        assert reconcile(device_status, make_profile(exercise_override), NOW) is None

    def test_expires_exactly_now(self, exercise_override):
        """timestamp + duration == now counts as expired."""
        from services.override_service import reconcile

        device_status = make_device_status(1, override_status=_status(minutes_ago=60))
        assert reconcile(device_status, make_profile(exercise_override), NOW) is None

    def test_one_second_before_expiry(self, exercise_override):
        from services.override_service import reconcile

        status = _status(minutes_ago=60, duration=timedelta(hours=1, seconds=1))
        device_status = make_device_status(1, override_status=status)
        assert reconcile(device_status, make_profile(exercise_override), NOW) is not None

    def test_indefinite_override_never_expires(self, exercise_override):
        from services.override_service import reconcile

        status = _status(minutes_ago=60 * 24 * 30, duration=None)
        device_status = make_device_status(1, override_status=status)
        result = reconcile(device_status, make_profile(exercise_override), NOW)

        assert result is not None
        assert result.end_date is None
        assert result.remaining(NOW) is None

    def test_missing_profile(self):
        from services.override_service import reconcile

        device_status = make_device_status(1, override_status=_status())
        assert reconcile(device_status, None, NOW) is None


class TestActiveOverride:
    """Remaining time derived from the device status."""

    def test_remaining(self, exercise_override):
        from services.override_service import reconcile

        device_status = make_device_status(1, override_status=_status(minutes_ago=20))
        result = reconcile(device_status, make_profile(exercise_override), NOW)

        assert result.end_date == NOW + timedelta(minutes=40)
        assert result.remaining(NOW) == timedelta(minutes=40)

    def test_remaining_never_negative(self, exercise_override):
        from services.override_service import reconcile

        device_status = make_device_status(1, override_status=_status(minutes_ago=20))
        result = reconcile(device_status, make_profile(exercise_override), NOW)

        assert result.remaining(NOW + timedelta(hours=2)) == timedelta(0)

"""
Core Backend Tests

Framework-level pieces shared by every app: domain errors, the GROUPEAT
settings accessor, the business day window and the validation helpers.

Test Categories:
1. Domain errors
2. Settings
3. Business day window
4. Validation and sanitizing
"""
import logging
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from django.core.exceptions import ImproperlyConfigured

from core_backend.config import DEFAULTS, app_settings
from core_backend.exceptions import (
    AlreadyExistsError,
    GroupeatError,
    InvalidInputError,
    NotExistsError,
    PaidOrderExistsError,
    RestaurantNotExistsError,
    StorageError,
    UnknownError,
    get_error_id,
)
from core_backend.utils import day_window
from core_backend.utils.validation import (
    is_address_key_valid,
    is_email_valid,
    is_empty,
    is_full_name_valid,
    is_phone_valid,
    is_true_integer,
    is_user_token_valid,
    sanitize_text,
)

JERUSALEM = ZoneInfo("Asia/Jerusalem")


# ============================================================================
# DOMAIN ERRORS
# ============================================================================

class TestDomainErrors:

    @pytest.mark.parametrize(
        "error_class, error_id",
        [
            (AlreadyExistsError, 1),
            (InvalidInputError, 2),
            (NotExistsError, 3),
            (UnknownError, 4),
            (PaidOrderExistsError, 5),
            (StorageError, 6),
            (RestaurantNotExistsError, 3),
        ],
    )
    def test_error_ids(self, error_class, error_id):
        error = error_class("Something went wrong.", {"key": "value"})

        assert isinstance(error, GroupeatError)
        assert error.get_error_id() == error_id
        assert get_error_id(error) == error_id
        assert error.details == {"key": "value"}
        assert str(error) == "Something went wrong."

    def test_unexpected_exceptions_map_to_unknown(self):
        assert get_error_id(KeyError("boom")) == UnknownError.error_id

    def test_errors_log_on_construction(self, caplog, monkeypatch):
        monkeypatch.setattr(logging.getLogger("core_backend"), "propagate", True)

        with caplog.at_level("WARNING", logger="core_backend.exceptions"):
            InvalidInputError("Bad token.", {"user_token": "x"})
            StorageError("Database down.")

        records = [(record.levelname, record.getMessage()) for record in caplog.records]
        assert ("WARNING", "InvalidInputError: Bad token. | details={'user_token': 'x'}") in records
        assert any(level == "ERROR" and "Database down." in message for level, message in records)


# ============================================================================
# SETTINGS
# ============================================================================

class TestAppSettings:

    def test_defaults_apply_when_not_overridden(self, settings):
        settings.GROUPEAT = {}

        assert app_settings.as_dict() == DEFAULTS
        assert app_settings.ORDERS_PER_DAY_THRESHOLD == 2
        assert app_settings.ALLOW_PAID_ORDERS_UPDATE is True

    def test_overrides_are_read_live(self, settings):
        settings.GROUPEAT = {"LIVENESS_TIMEOUT": 7}

        assert app_settings.LIVENESS_TIMEOUT == 7
        assert app_settings.LIVENESS_CHECK_INTERVAL == DEFAULTS["LIVENESS_CHECK_INTERVAL"]

    def test_unknown_setting(self):
        with pytest.raises(AttributeError):
            app_settings.NOT_A_SETTING

    @pytest.mark.parametrize(
        "overrides",
        [
            {"LIVENESS_CHECK_INTERVAL": 0},
            {"LIVENESS_TIMEOUT": -1},
            {"LIVENESS_CHECK_INTERVAL": 30, "LIVENESS_TIMEOUT": 20},
            {"ORDERS_PER_DAY_THRESHOLD": 0},
            {"DAY_START_HOUR": 24},
            {"DAY_END_HOUR": -1},
        ],
    )
    def test_validate_rejects_inconsistent_settings(self, settings, overrides):
        settings.GROUPEAT = overrides

        with pytest.raises(ImproperlyConfigured):
            app_settings.validate()

    def test_validate_accepts_defaults(self, settings):
        settings.GROUPEAT = {}

        app_settings.validate()


# ============================================================================
# BUSINESS DAY WINDOW
# ============================================================================

class TestDayWindow:

    def test_default_window_is_local_midnight_to_midnight(self):
        moment = datetime(2024, 5, 14, 15, 30, tzinfo=JERUSALEM)

        window = day_window.today_window(moment)

        assert window.start == datetime(2024, 5, 14, 0, 0, tzinfo=JERUSALEM)
        assert window.end == datetime(2024, 5, 15, 0, 0, tzinfo=JERUSALEM)
        assert moment in window

    def test_window_end_survives_dst_change(self):
        # Israel moved to summer time on 2024-03-29 at 02:00.
        moment = datetime(2024, 3, 29, 12, 0, tzinfo=JERUSALEM)

        window = day_window.today_window(moment)

        assert window.end.utcoffset().total_seconds() == 3 * 3600
        assert window.end.hour == 0

    def test_window_is_pinned_to_fixed_hours(self, settings):
        settings.GROUPEAT = {**settings.GROUPEAT, "DAY_START_HOUR": 8, "DAY_END_HOUR": 14}
        moment = datetime(2024, 5, 14, 9, 0, tzinfo=JERUSALEM)

        window = day_window.today_window(moment)

        assert window.start.hour == 8
        assert window.end.hour == 14
        assert datetime(2024, 5, 14, 15, 0, tzinfo=JERUSALEM) not in window

    def test_fixed_hours_use_the_offset_of_their_own_hour(self, settings):
        """
        HIGH: Verify fixed-hour boundaries on a DST change day.

        Scenario:
        - Israel moves to summer time on 2024-03-29 at 02:00 (+02:00 to +03:00)
        - The business day is pinned to 08:00-14:00
        - Expected: both boundaries carry the summer offset, not midnight's
        """
        settings.GROUPEAT = {**settings.GROUPEAT, "DAY_START_HOUR": 8, "DAY_END_HOUR": 14}
        moment = datetime(2024, 3, 29, 12, 0, tzinfo=JERUSALEM)

        window = day_window.today_window(moment)

        assert window.start.utcoffset().total_seconds() == 3 * 3600
        assert window.end.utcoffset().total_seconds() == 3 * 3600
        assert window.start == datetime(2024, 3, 29, 5, 0, tzinfo=ZoneInfo("UTC"))
        assert window.end == datetime(2024, 3, 29, 11, 0, tzinfo=ZoneInfo("UTC"))

    @pytest.mark.parametrize("hour, expected", [(7, False), (8, True), (13, True), (14, False)])
    def test_order_time_with_fixed_hours(self, settings, hour, expected):
        settings.GROUPEAT = {**settings.GROUPEAT, "DAY_START_HOUR": 8, "DAY_END_HOUR": 14}

        assert day_window.is_order_time(datetime(2024, 5, 14, hour, 30, tzinfo=JERUSALEM)) is expected

    def test_order_time_is_open_without_fixed_hours(self):
        assert day_window.is_order_time(datetime(2024, 5, 14, 3, 0, tzinfo=JERUSALEM))


# ============================================================================
# VALIDATION AND SANITIZING
# ============================================================================

class TestValidation:

    @pytest.mark.parametrize(
        "value, expected",
        [(12, True), ("12", True), (12.0, True), (Decimal("3"), True), (12.5, False),
         (True, False), (None, False), ("1.5", False), ("abc", False)],
    )
    def test_is_true_integer(self, value, expected):
        assert is_true_integer(value) is expected

    def test_is_empty(self):
        assert is_empty(None)
        assert is_empty("")
        assert is_empty([])
        assert not is_empty(0)

    @pytest.mark.parametrize(
        "phone, expected",
        [
            ("0527654321", True),
            ("052-7654321", True),
            ("03-5555555", True),
            ("*2700", True),
            ("1-800-123-456", True),
            ("0771234567", True),
            ("0521234567", False),
            ("12345", False),
            ("", False),
        ],
    )
    def test_is_phone_valid(self, phone, expected):
        assert is_phone_valid(phone) is expected

    @pytest.mark.parametrize(
        "full_name, expected",
        [("Dana Levi", True), ("דנה לוי", True), ("Dana", False), ("D Levi", False), ("Dana Levi2", False)],
    )
    def test_is_full_name_valid(self, full_name, expected):
        assert is_full_name_valid(full_name) is expected

    def test_tokens_keys_and_emails(self):
        assert is_user_token_valid("ZGFuYQ==")
        assert not is_user_token_valid("ZGFuYQ")
        assert not is_user_token_valid(None)
        assert is_address_key_valid("1-22-333-4444")
        assert not is_address_key_valid("1-22-333")
        assert is_email_valid("Dana@Example.com")
        assert not is_email_valid("dana@")

    def test_sanitize(self):
        assert sanitize_text("<b>Hi</b> & bye") == "Hi &amp; bye"
        assert sanitize_text(5) == 5

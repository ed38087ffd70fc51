"""
בדיקות מדיניות האימות של webhook - app/api/dependencies/webhook_auth.py
"""
import pytest

from app.api.dependencies.webhook_auth import (
    MODE_SIGNATURE,
    MODE_TOKEN,
    MODE_UNAUTHENTICATED,
    REASON_NO_CREDENTIALS,
    REASON_TOKEN_MISMATCH,
    evaluate_webhook_auth,
)
from app.core.signature import REASON_SIGNATURE_MISMATCH, sign_hex

BODY = b'{"type":"subscription.created"}'
SECRET = "whsec-policy"
TOKEN = "hook-token"


def _evaluate(**overrides):
    kwargs = dict(
        signature=None,
        timestamp=None,
        query_token=None,
        payments_enabled=True,
        secret=SECRET,
        webhook_token=TOKEN,
        max_skew_seconds=300,
        now=1700000000,
    )
    kwargs.update(overrides)
    return evaluate_webhook_auth(BODY, **kwargs)


class TestPaymentsEnabled:
    """תשלומים פעילים - חייב אימות"""

    @pytest.mark.unit
    def test_valid_signature(self):
        decision = _evaluate(signature=sign_hex(BODY, SECRET))
        assert decision.authenticated
        assert decision.mode == MODE_SIGNATURE

    @pytest.mark.unit
    def test_bad_signature_does_not_fall_back_to_token(self):
        """כשיש header חתימה - החתימה קובעת, גם אם ה-token נכון"""
        decision = _evaluate(signature=sign_hex(BODY, "wrong"), query_token=TOKEN)
        assert not decision.authenticated
        assert decision.reason == REASON_SIGNATURE_MISMATCH

    @pytest.mark.unit
    def test_token_fallback_without_signature_header(self):
        decision = _evaluate(query_token=TOKEN)
        assert decision.authenticated
        assert decision.mode == MODE_TOKEN

    @pytest.mark.unit
    def test_wrong_token(self):
        decision = _evaluate(query_token="nope")
        assert not decision.authenticated
        assert decision.reason == REASON_TOKEN_MISMATCH

    @pytest.mark.unit
    def test_missing_token(self):
        decision = _evaluate()
        assert not decision.authenticated
        assert decision.reason == REASON_TOKEN_MISMATCH

    @pytest.mark.unit
    def test_signature_header_ignored_without_secret(self):
        """בלי סוד מוגדר, header חתימה לא עוזר - נדרש token"""
        decision = _evaluate(secret="", signature=sign_hex(BODY, SECRET), query_token=TOKEN)
        assert decision.authenticated
        assert decision.mode == MODE_TOKEN

    @pytest.mark.unit
    def test_no_credentials_configured(self):
        decision = _evaluate(secret="", webhook_token="", query_token="anything")
        assert not decision.authenticated
        assert decision.reason == REASON_NO_CREDENTIALS


class TestPaymentsDisabled:
    """תשלומים כבויים - מצב בדיקות"""

    @pytest.mark.unit
    def test_accepts_without_credentials(self):
        decision = _evaluate(payments_enabled=False)
        assert decision.authenticated
        assert decision.mode == MODE_UNAUTHENTICATED

    @pytest.mark.unit
    def test_supplied_token_must_match(self):
        decision = _evaluate(payments_enabled=False, query_token="wrong")
        assert not decision.authenticated

    @pytest.mark.unit
    def test_matching_token_accepted(self):
        decision = _evaluate(payments_enabled=False, query_token=TOKEN)
        assert decision.authenticated
        assert decision.mode == MODE_TOKEN

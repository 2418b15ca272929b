"""Tests for the Celery claim audit tasks (run eagerly, no broker)."""

from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from courier_dispatch.database import Base
from courier_dispatch.models import ClaimAttemptLog
from courier_dispatch.services.claims import ClaimAttempt
from courier_dispatch.tasks import audit_claim_attempt, health_check


@pytest.fixture
def session_maker(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    Base.metadata.create_all(engine)
    maker = sessionmaker(bind=engine, expire_on_commit=False)
    with patch("courier_dispatch.tasks.get_sync_session_maker", return_value=maker):
        yield maker
    engine.dispose()


class TestAuditClaimAttempt:
    def test_stores_winning_attempt(self, session_maker):
        attempt = ClaimAttempt(order_id="o1", courier_id="C1")
        payload = {
            **attempt.to_dict(),
            "success": True,
            "code": None,
            "error": None,
            "response_time_ms": 12.5,
        }

        result = audit_claim_attempt.apply(args=[payload]).get()

        assert result["success"] is True
        with session_maker() as session:
            log = session.execute(select(ClaimAttemptLog)).scalar_one()
        assert log.id == result["log_id"]
        assert log.order_id == "o1"
        assert log.courier_id == "C1"
        assert log.success is True
        assert log.response_time_ms == 12.5

    def test_stores_losing_attempt(self, session_maker):
        attempt = ClaimAttempt(order_id="o1", courier_id="C2")
        payload = {
            **attempt.to_dict(),
            "success": False,
            "code": "ORDER_NOT_AVAILABLE",
            "error": "Order is no longer available",
        }

        audit_claim_attempt.apply(args=[payload]).get()

        with session_maker() as session:
            log = session.execute(select(ClaimAttemptLog)).scalar_one()
        assert log.success is False
        assert log.code == "ORDER_NOT_AVAILABLE"
        assert log.response_time_ms is None


def test_health_check():
    assert health_check.apply().get()["status"] == "healthy"

"""
Audit trail tests: insert-only log, closed action set per financial entity
"""
import pytest

from core.errors import ForbiddenError


class TestAuditService:

    @pytest.mark.asyncio
    async def test_log_and_read_back(self, audit_service):
        await audit_service.log_action(
            module_name="REFUNDS",
            entity_type="REFUND",
            entity_id="r-1",
            action_type="MARK_PAID",
            user_id="u-1",
            old_value={"status": "Pending"},
            new_value={"status": "Paid"}
        )
        logs = await audit_service.get_audit_logs(entity_type="REFUND", entity_id="r-1")

        assert len(logs) == 1
        assert logs[0]["action_type"] == "MARK_PAID"
        assert logs[0]["new_value_json"] == {"status": "Paid"}
        assert "audit_id" in logs[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entity_type", ["RECEIPT", "EXPENSE", "REFUND", "CANCELLATION"])
    async def test_hard_delete_of_financial_entity_refused(self, audit_service, entity_type):
        with pytest.raises(ForbiddenError):
            await audit_service.log_action(
                module_name="ANY", entity_type=entity_type, entity_id="x",
                action_type="DELETE", user_id="u-1"
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entity_type,action_type", [
        ("RECEIPT", "MARK_PAID"),
        ("REFUND", "SOFT_DELETE"),
        ("EXPENSE", "UPDATE"),
        ("CANCELLATION", "SUBMIT"),
    ])
    async def test_unsupported_action_refused(self, db, audit_service, entity_type, action_type):
        with pytest.raises(ForbiddenError):
            await audit_service.log_action(
                module_name="ANY", entity_type=entity_type, entity_id="x",
                action_type=action_type, user_id="u-1"
            )
        assert db.audit_logs.docs == []

    @pytest.mark.asyncio
    async def test_other_entity_types_unrestricted(self, db, audit_service):
        await audit_service.log_action(
            module_name="USERS", entity_type="USER", entity_id="u-9",
            action_type="DELETE", user_id="u-1"
        )
        assert len(db.audit_logs.docs) == 1

    @pytest.mark.asyncio
    async def test_filters(self, audit_service):
        for entity_id, action_type, user_id in [
            ("e-1", "CREATE", "u-1"), ("e-1", "SUBMIT", "u-1"), ("e-1", "APPROVE", "u-2")
        ]:
            await audit_service.log_action(
                module_name="FINANCIAL_DOCUMENTS", entity_type="EXPENSE", entity_id=entity_id,
                action_type=action_type, user_id=user_id
            )

        approvals = await audit_service.get_audit_logs(action_type="APPROVE")
        assert [log["user_id"] for log in approvals] == ["u-2"]

        by_user = await audit_service.get_audit_logs(entity_id="e-1", user_id="u-1")
        assert sorted(log["action_type"] for log in by_user) == ["CREATE", "SUBMIT"]

    @pytest.mark.asyncio
    async def test_soft_delete_allowed(self, db, audit_service):
        await audit_service.log_action(
            module_name="CANCELLATIONS", entity_type="CANCELLATION", entity_id="c-1",
            action_type="SOFT_DELETE", user_id="u-1"
        )
        assert len(db.audit_logs.docs) == 1

    @pytest.mark.asyncio
    async def test_write_failure_does_not_propagate(self, db, audit_service, monkeypatch):
        async def failing_insert(doc, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db.audit_logs, "insert_one", failing_insert)

        await audit_service.log_action(
            module_name="APPROVALS", entity_type="EXPENSE", entity_id="e-1",
            action_type="APPROVE", user_id="u-1"
        )

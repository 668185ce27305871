"""
Repayment scheduler and the check/perform upkeep protocol.
"""

import threading

import pytest

from vaultfund.core.db import get_db
from vaultfund.core.errors import AlreadyScheduled, InvalidInput, NotYetFunded, UnknownSchedule, UnknownVault
from vaultfund.core.events import PAYMENT_PROCESSED, SCHEDULE_CREATED, VAULT_ACTIVE, VAULT_CLOSED
from vaultfund.core.repayment import decode_perform_data, encode_perform_data, installment_for
from vaultfund.core.schema import VaultStatus


def fund(engine, target, investor="0xInvestor"):
    vault = engine.vaults.create_vault("0xBeneficiary", target)
    engine.vaults.invest(vault.id, investor, target)
    return vault


class TestInstallments:
    """Installment arithmetic and performData encoding."""

    def test_installment_rounds_up(self):
        assert installment_for(30_000_000000, 120) == 250_000000
        assert installment_for(1000, 3) == 334
        assert installment_for(1, 120) == 1

    def test_perform_data_round_trip(self):
        assert decode_perform_data(encode_perform_data([3, 1])) == [3, 1]

    @pytest.mark.parametrize("data", [b"", b"garbage", b"[1, 2]", b'{"vault_ids": "x"}', b"\xff\xfe"])
    def test_malformed_perform_data_decodes_empty(self, data):
        assert decode_perform_data(data) == []


class TestCreateSchedule:
    """Schedule creation preconditions."""

    def test_create_schedule(self, engine, funded_vault, clock):
        schedule = engine.repayment.create_schedule(funded_vault.id, total_months=120)

        assert schedule.monthly_amount == 250_000000
        assert schedule.total_months == 120
        assert schedule.paid_months == 0
        assert schedule.next_payment_due == clock() + engine.config.period_length
        assert schedule.total_owed == 30_000_000000
        assert schedule.is_active is True

        assert engine.vaults.get_vault(funded_vault.id).status == VaultStatus.ACTIVE
        assert engine.events.count(SCHEDULE_CREATED, funded_vault.id) == 1
        assert engine.events.count(VAULT_ACTIVE, funded_vault.id) == 1

    def test_default_term(self, engine, funded_vault):
        schedule = engine.repayment.create_schedule(funded_vault.id)
        assert schedule.total_months == 120

    def test_second_schedule_rejected(self, engine, funded_vault):
        first = engine.repayment.create_schedule(funded_vault.id, total_months=120)

        with pytest.raises(AlreadyScheduled):
            engine.repayment.create_schedule(funded_vault.id, total_months=12)

        assert engine.repayment.get_schedule(funded_vault.id) == first
        assert engine.events.count(SCHEDULE_CREATED, funded_vault.id) == 1

    def test_partially_funded_vault(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        engine.vaults.invest(vault.id, "0xAlice", 999999)

        with pytest.raises(NotYetFunded):
            engine.repayment.create_schedule(vault.id)
        with pytest.raises(UnknownSchedule):
            engine.repayment.get_schedule(vault.id)

    def test_unknown_vault(self, engine):
        with pytest.raises(UnknownVault):
            engine.repayment.create_schedule(404)

    @pytest.mark.parametrize("months", [0, -3, 1.5])
    def test_invalid_term(self, engine, funded_vault, months):
        with pytest.raises(InvalidInput):
            engine.repayment.create_schedule(funded_vault.id, total_months=months)


class TestUpkeep:
    """check_upkeep is read-only; perform_upkeep advances each due vault once."""

    def test_not_due_before_first_period(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        clock.advance(engine.config.period_length - 1)

        needed, data = engine.repayment.check_upkeep(b"")
        assert needed is False
        assert decode_perform_data(data) == []
        assert engine.repayment.perform_upkeep(b"") == []

    def test_check_upkeep_does_not_mutate(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        clock.advance(engine.config.period_length)
        before = engine.events.count()

        for _ in range(5):
            needed, data = engine.repayment.check_upkeep(b"")
            assert needed is True
            assert decode_perform_data(data) == [funded_vault.id]

        assert engine.events.count() == before
        assert engine.repayment.get_schedule(funded_vault.id).paid_months == 0

    def test_perform_processes_one_period(self, engine, funded_vault, clock):
        schedule = engine.repayment.create_schedule(funded_vault.id)
        clock.advance(engine.config.period_length)

        _, data = engine.repayment.check_upkeep(b"")
        payments = engine.repayment.perform_upkeep(data)

        assert len(payments) == 1
        assert payments[0].month == 1
        assert payments[0].amount == 250_000000
        assert payments[0].due_at == schedule.next_payment_due

        updated = engine.repayment.get_schedule(funded_vault.id)
        assert updated.paid_months == 1
        assert updated.total_paid == 250_000000
        assert updated.next_payment_due == schedule.next_payment_due + engine.config.period_length

        with get_db(engine.config.db_path) as conn:
            transfer = conn.execute("SELECT * FROM transfers WHERE kind = 'repayment'").fetchone()
        assert transfer["counterparty"] == "0xBeneficiary"
        assert transfer["amount"] == 250_000000

    def test_repeat_perform_is_noop(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        clock.advance(engine.config.period_length)
        _, data = engine.repayment.check_upkeep(b"")

        assert len(engine.repayment.perform_upkeep(data)) == 1
        assert engine.repayment.perform_upkeep(data) == []
        assert engine.repayment.perform_upkeep(b"") == []

        assert engine.repayment.get_schedule(funded_vault.id).paid_months == 1
        assert engine.events.count(PAYMENT_PROCESSED, funded_vault.id) == 1

    def test_stale_perform_data_for_undue_vault(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        assert engine.repayment.perform_upkeep(encode_perform_data([funded_vault.id, 999])) == []

    def test_malformed_perform_data_falls_back_to_scan(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        clock.advance(engine.config.period_length)

        payments = engine.repayment.perform_upkeep(b"not json")
        assert [p.vault_id for p in payments] == [funded_vault.id]

    def test_missed_periods_processed_one_per_call(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        clock.advance(3 * engine.config.period_length)

        status = engine.repayment.schedule_status(funded_vault.id)
        assert status["is_due"] is True
        assert status["overdue_periods"] == 2

        months = []
        for _ in range(4):
            months.extend(p.month for p in engine.repayment.perform_upkeep(b""))
        assert months == [1, 2, 3]

        schedule = engine.repayment.get_schedule(funded_vault.id)
        assert schedule.paid_months == 3
        assert engine.repayment.check_upkeep_for(funded_vault.id) is False

    def test_multiple_vaults_in_one_call(self, engine, clock):
        first = fund(engine, 1200)
        second = fund(engine, 2400)
        engine.repayment.create_schedule(first.id, total_months=12)
        engine.repayment.create_schedule(second.id, total_months=12)
        clock.advance(engine.config.period_length)

        needed, data = engine.repayment.check_upkeep(b"")
        assert needed is True
        payments = engine.repayment.perform_upkeep(data)
        assert sorted((p.vault_id, p.amount) for p in payments) == [(first.id, 100), (second.id, 200)]
        assert engine.repayment.get_active_schedules() == [first.id, second.id]

    def test_concurrent_performers_advance_once(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        clock.advance(engine.config.period_length)
        _, data = engine.repayment.check_upkeep(b"")

        barrier = threading.Barrier(4)
        results = []
        lock = threading.Lock()

        def keeper():
            barrier.wait()
            processed = engine.repayment.perform_upkeep(data)
            with lock:
                results.extend(processed)

        threads = [threading.Thread(target=keeper) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(results) == 1
        assert engine.repayment.get_schedule(funded_vault.id).paid_months == 1
        assert len(engine.repayment.list_payments(funded_vault.id)) == 1


class TestFullTerm:
    """Schedule runs to exhaustion and closes the vault."""

    def test_120_month_repayment(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id, total_months=120)

        for _ in range(120):
            clock.advance(engine.config.period_length)
            assert len(engine.repayment.perform_upkeep(b"")) == 1

        schedule = engine.repayment.get_schedule(funded_vault.id)
        assert schedule.paid_months == 120
        assert schedule.total_paid == 30_000_000000
        assert schedule.remaining_owed == 0
        assert schedule.is_active is False

        vault = engine.vaults.get_vault(funded_vault.id)
        assert vault.status == VaultStatus.CLOSED
        assert vault.is_active is False
        assert engine.events.count(PAYMENT_PROCESSED, funded_vault.id) == 120
        assert engine.events.count(VAULT_CLOSED, funded_vault.id) == 1

        clock.advance(10 * engine.config.period_length)
        assert engine.repayment.check_upkeep(b"")[0] is False
        assert engine.repayment.perform_upkeep(b"") == []
        assert engine.repayment.get_active_schedules() == []

    def test_uneven_total_repaid_exactly(self, engine, clock):
        vault = fund(engine, 1000)
        engine.repayment.create_schedule(vault.id, total_months=3)

        for _ in range(3):
            clock.advance(engine.config.period_length)
            engine.repayment.perform_upkeep(b"")

        amounts = [p.amount for p in engine.repayment.list_payments(vault.id)]
        assert amounts == [334, 334, 332]
        assert sum(amounts) == 1000

    def test_trailing_installments_can_be_zero(self, engine, clock):
        vault = fund(engine, 10)
        engine.repayment.create_schedule(vault.id, total_months=6)

        for _ in range(6):
            clock.advance(engine.config.period_length)
            engine.repayment.perform_upkeep(b"")

        amounts = [p.amount for p in engine.repayment.list_payments(vault.id)]
        assert amounts == [2, 2, 2, 2, 2, 0]
        assert engine.vaults.get_vault(vault.id).status == VaultStatus.CLOSED

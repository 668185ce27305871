"""
Vault lifecycle: creation, price-scaled investment and closure.
"""

import threading

import pytest

from vaultfund.core.errors import (
    CapacityExceeded,
    InvalidInput,
    InvalidStateTransition,
    UnknownVault,
    VaultNotAcceptingDeposits,
)
from vaultfund.core.events import FUNDS_DEPOSITED, VAULT_CLOSED, VAULT_CREATED, VAULT_FUNDED
from vaultfund.core.schema import VaultStatus


class TestCreateVault:
    """Vault creation and validation."""

    def test_create_vault(self, engine, clock):
        vault = engine.vaults.create_vault("0xBeneficiary", 5_000_000000, metadata="ipfs://meta", study_duration=48)

        assert vault.id == 1
        assert vault.status == VaultStatus.CREATED
        assert vault.is_active is True
        assert vault.total_deposited == 0
        assert vault.remaining_capacity == 5_000_000000
        assert vault.study_duration == 48
        assert vault.created_at == clock()
        assert engine.events.count(VAULT_CREATED, vault.id) == 1

    @pytest.mark.parametrize("target", [0, -1, 2.5])
    def test_invalid_target(self, engine, target):
        with pytest.raises(InvalidInput, match="Invalid target"):
            engine.vaults.create_vault("0xBeneficiary", target)

    def test_target_beyond_storable_range(self, engine):
        """An 18-decimal amount past the 64-bit column range is rejected, not an OverflowError."""
        with pytest.raises(InvalidInput, match="Invalid target"):
            engine.vaults.create_vault("0xBeneficiary", 30_000 * 10 ** 18)
        with pytest.raises(InvalidInput):
            engine.vaults.create_vault("0xBeneficiary", 100, study_duration=2 ** 63)
        assert engine.vaults.list_vaults() == []

    def test_blank_beneficiary(self, engine):
        with pytest.raises(InvalidInput):
            engine.vaults.create_vault("  ", 100)

    def test_list_vaults_by_status(self, engine):
        first = engine.vaults.create_vault("0xA", 100)
        engine.vaults.create_vault("0xB", 100)
        engine.vaults.invest(first.id, "0xInvestor", 100)

        assert [v.id for v in engine.vaults.list_vaults()] == [1, 2]
        assert [v.id for v in engine.vaults.list_vaults(VaultStatus.FUNDED)] == [1]
        assert [v.id for v in engine.vaults.list_vaults("created")] == [2]

    def test_unknown_vault(self, engine):
        with pytest.raises(UnknownVault):
            engine.vaults.get_vault(42)


class TestInvest:
    """Deposits through the lifecycle."""

    def test_partial_then_full_funding(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)

        result = engine.vaults.invest(vault.id, "0xAlice", 400000)
        assert result.vault.status == VaultStatus.FUNDING
        assert result.credited_amount == 400000
        assert result.multiplier == 100

        result = engine.vaults.invest(vault.id, "0xBob", 600000)
        assert result.vault.status == VaultStatus.FUNDED
        assert result.vault.total_deposited == 1_000000
        assert result.position.amount_deposited == 600000

        assert engine.events.count(FUNDS_DEPOSITED, vault.id) == 2
        assert engine.events.count(VAULT_FUNDED, vault.id) == 1

    def test_single_deposit_funds_directly(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 500)
        result = engine.vaults.invest(vault.id, "0xAlice", 500)
        assert result.vault.status == VaultStatus.FUNDED

    def test_capacity_rejection(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        engine.vaults.invest(vault.id, "0xAlice", 600000)

        with pytest.raises(CapacityExceeded):
            engine.vaults.invest(vault.id, "0xBob", 500000)

        vault = engine.vaults.get_vault(vault.id)
        assert vault.total_deposited == 600000
        assert vault.status == VaultStatus.FUNDING
        assert engine.events.count(FUNDS_DEPOSITED, vault.id) == 1

    def test_funded_vault_has_no_capacity_left(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 100)
        engine.vaults.invest(vault.id, "0xAlice", 100)

        with pytest.raises(CapacityExceeded):
            engine.vaults.invest(vault.id, "0xBob", 1)

    def test_investment_scaled_by_multiplier(self, engine):
        """Price 10% above peg gives multiplier 110: 1.000000 credits as 1.100000."""
        engine.pricing.observe(110_000000)
        vault = engine.vaults.create_vault("0xBeneficiary", 5_000000)

        result = engine.vaults.invest(vault.id, "0xAlice", 1_000000)

        assert result.multiplier == 110
        assert result.requested_amount == 1_000000
        assert result.credited_amount == 1_100000
        assert engine.ledger.get_position(vault.id, "0xAlice").amount_deposited == 1_100000

    def test_no_price_data_invests_unscaled(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 5_000000)
        result = engine.vaults.invest(vault.id, "0xAlice", 1_234567)
        assert result.credited_amount == 1_234567

    def test_scaled_amount_checked_against_capacity(self, engine):
        engine.pricing.observe(120_000000)
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)

        # 900000 scales to 1080000, past the target
        with pytest.raises(CapacityExceeded):
            engine.vaults.invest(vault.id, "0xAlice", 900000)
        assert engine.vaults.get_vault(vault.id).total_deposited == 0

    def test_invest_into_closed_vault(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        engine.vaults.close_vault(vault.id)

        with pytest.raises(VaultNotAcceptingDeposits):
            engine.vaults.invest(vault.id, "0xAlice", 100)

    def test_invest_unknown_vault(self, engine):
        with pytest.raises(UnknownVault):
            engine.vaults.invest(7, "0xAlice", 100)

    def test_invest_invalid_amount(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        with pytest.raises(InvalidInput):
            engine.vaults.invest(vault.id, "0xAlice", 0)

    def test_invest_amount_beyond_storable_range(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        with pytest.raises(InvalidInput):
            engine.vaults.invest(vault.id, "0xAlice", 2 ** 63)
        assert engine.vaults.get_vault(vault.id).total_deposited == 0

    def test_concurrent_investors_never_overshoot_target(self, engine):
        """Eight investors race for a target that fits three of them."""
        vault = engine.vaults.create_vault("0xBeneficiary", 1000)

        barrier = threading.Barrier(8)
        accepted = []
        rejected = []
        lock = threading.Lock()

        def investor(i):
            barrier.wait()
            try:
                engine.vaults.invest(vault.id, f"0xInvestor{i}", 300)
            except CapacityExceeded:
                with lock:
                    rejected.append(i)
            else:
                with lock:
                    accepted.append(i)

        threads = [threading.Thread(target=investor, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(accepted) == 3
        assert len(rejected) == 5
        vault = engine.vaults.get_vault(vault.id)
        assert vault.total_deposited == 900
        assert engine.ledger.sum_positions(vault.id) == 900
        assert vault.status == VaultStatus.FUNDING
        assert engine.events.count(FUNDS_DEPOSITED, vault.id) == 3
        assert sorted(p.investor for p in engine.ledger.list_positions(vault.id)) == sorted(
            f"0xInvestor{i}" for i in accepted
        )


class TestCloseVault:
    """Administrative closure."""

    def test_close_vault(self, engine, clock):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        closed = engine.vaults.close_vault(vault.id, reason="withdrawn")

        assert closed.status == VaultStatus.CLOSED
        assert closed.is_active is False
        assert closed.closed_at == clock()

        events = engine.events.list_events(kind=VAULT_CLOSED, vault_id=vault.id)
        assert len(events) == 1
        assert events[0].payload == {"reason": "withdrawn"}

    def test_close_twice_rejected(self, engine):
        vault = engine.vaults.create_vault("0xBeneficiary", 1_000000)
        engine.vaults.close_vault(vault.id)

        with pytest.raises(InvalidStateTransition):
            engine.vaults.close_vault(vault.id)
        assert engine.events.count(VAULT_CLOSED, vault.id) == 1

    def test_close_stops_schedule(self, engine, funded_vault, clock):
        engine.repayment.create_schedule(funded_vault.id)
        engine.vaults.close_vault(funded_vault.id)

        clock.advance(engine.config.period_length)
        assert engine.repayment.check_upkeep()[0] is False
        assert engine.repayment.perform_upkeep() == []

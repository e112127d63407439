"""
Tests for special referral codes.
"""

import re
import pytest
from core import referrals as referrals_module
from core.errors import (
    AccountNotFound,
    BillingError,
    ErrorKind,
    InvalidAmount,
    InvalidReferralCode,
    ReferralAlreadyRedeemed,
    ReferralCodeUsed,
)
from core.referrals import SpecialReferralService, generate_special_code, special_referral_key


@pytest.fixture
def referrals(db, ledger):
    return SpecialReferralService(db, ledger)


@pytest.fixture
def code(referrals):
    """One unused 100-credit code."""
    return referrals.generate(1, credits=100, created_by="ops")[0].code


class TestGenerate:
    """Test issuing codes."""

    def test_code_format(self):
        for _ in range(20):
            assert re.fullmatch(r"(VIP|ELITE|PLATINUM|PREMIUM|GOLD|DIAMOND|ROYAL|MASTER|PRIME|ULTRA)\d{4}",
                                generate_special_code())

    def test_batch(self, referrals):
        codes = referrals.generate(5, credits=40, description="Broker launch", created_by="ops")

        assert len({c.code for c in codes}) == 5
        assert all(c.credits == 40 and c.description == "Broker launch" for c in codes)
        assert all(c.used_by is None for c in codes)
        assert len(referrals.list_codes(include_used=False)) == 5

    def test_defaults(self, referrals):
        record = referrals.generate()[0]

        assert record.credits == 100
        assert record.description == "VIP Realtor Program"

    @pytest.mark.parametrize("count", [0, 51])
    def test_count_bounds(self, referrals, count):
        with pytest.raises(InvalidAmount):
            referrals.generate(count)

    def test_credits_must_be_positive(self, referrals):
        with pytest.raises(InvalidAmount):
            referrals.generate(1, credits=0)

    def test_collision_retries(self, referrals, monkeypatch):
        """A generated code that already exists is replaced by a fresh one."""
        candidates = iter(["GOLD1111", "GOLD1111", "GOLD2222"])
        monkeypatch.setattr(referrals_module, "generate_special_code", lambda: next(candidates))

        codes = referrals.generate(2)

        assert [c.code for c in codes] == ["GOLD1111", "GOLD2222"]

    def test_gives_up_after_attempt_limit(self, referrals, monkeypatch):
        monkeypatch.setattr(referrals_module, "generate_special_code", lambda: "VIP1000")
        referrals.generate(1)

        with pytest.raises(BillingError):
            referrals.generate(1)

        assert [c.code for c in referrals.list_codes()] == ["VIP1000"]


class TestValidate:
    """Test checking a code before redemption."""

    def test_valid_code(self, referrals, code):
        result = referrals.validate(code.lower() + "  ")

        assert result.valid
        assert result.code == code
        assert result.credits == 100
        assert result.description == "VIP Realtor Program"

    def test_unknown_code(self, referrals):
        result = referrals.validate("NOPE0000")

        assert not result.valid
        assert result.error == ErrorKind.REFERRAL_CODE_INVALID

    def test_used_code(self, referrals, account, code):
        referrals.redeem(account.id, code)

        result = referrals.validate(code)

        assert not result.valid
        assert result.to_dict()["error"] == "referral_code_used"


class TestRedeem:
    """Test crediting an account from a code."""

    def test_redeem_credits_once(self, referrals, ledger, account, code):
        """The code's credits land on the ledger and the code is spent."""
        redemption = referrals.redeem(account.id, code)

        assert redemption.created
        assert redemption.credits == 100
        assert redemption.entry.reason == "special_referral"
        assert redemption.entry.idempotency_key == special_referral_key(code)
        assert redemption.entry.meta == {"code": code, "description": "VIP Realtor Program"}
        assert ledger.balance_of(account.id) == 103
        assert referrals.list_codes()[0].used_by == account.id

    def test_repeat_redeem_is_idempotent(self, referrals, ledger, account, code):
        first = referrals.redeem(account.id, code)
        again = referrals.redeem(account.id, code.lower())

        assert not again.created
        assert again.entry.entry_id == first.entry.entry_id
        assert ledger.balance_of(account.id) == 103

    def test_code_used_by_another_account(self, referrals, ledger, accounts, account, code):
        referrals.redeem(account.id, code)
        other = accounts.provision("other@example.com")

        with pytest.raises(ReferralCodeUsed) as exc:
            referrals.redeem(other.id, code)

        assert exc.value.kind.http_status == 409
        assert ledger.balance_of(other.id) == 3

    def test_second_code_for_same_account_rejected(self, referrals, ledger, account, code):
        """An account can redeem one special code in total."""
        referrals.redeem(account.id, code)
        second = referrals.generate(1, credits=50)[0].code

        with pytest.raises(ReferralAlreadyRedeemed):
            referrals.redeem(account.id, second)

        assert ledger.balance_of(account.id) == 103
        assert referrals.validate(second).valid

    def test_unknown_code(self, referrals, ledger, account):
        with pytest.raises(InvalidReferralCode) as exc:
            referrals.redeem(account.id, "NOPE0000")

        assert exc.value.kind.http_status == 404
        assert ledger.balance_of(account.id) == 3

    def test_unknown_account(self, referrals, code):
        with pytest.raises(AccountNotFound):
            referrals.redeem("nobody", code)

        assert referrals.validate(code).valid

    def test_ledger_stays_consistent(self, referrals, ledger, account, code):
        referrals.redeem(account.id, code)

        assert ledger.verify(account.id) is None

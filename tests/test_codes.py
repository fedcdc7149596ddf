"""Unit tests for auth/codes.py -- VerificationCodeManager.

Covers:
- issued codes are 43-char URL-safe strings, unique, stored active
- ACTIVATE consumption enables the account and deactivates the code
- second consumption -> CodeAlreadyConsumed (never CodeNotFound)
- unknown code -> CodeNotFound
- purpose mismatch -> ValidationError and the code stays usable
- RECOVER consumption authorizes a reset but changes no password
- redeem_recovery(): typo in the confirmation does not burn the code
- reset_password() on a missing account -> ResourceNotFound
- eight threads consuming one code (file-backed SQLite) -> exactly one outcome
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from auth.codes import VerificationCodeManager
from auth.errors import CodeAlreadyConsumed, CodeNotFound, ResourceNotFound, ValidationError
from auth.models import Account, CodeOutcome, CodePurpose
from auth.store import TrustStore
from auth.tokens import hash_password, verify_password

_OLD_HASH = hash_password("old-password")


@pytest.fixture
def codes(store: TrustStore) -> VerificationCodeManager:
    return VerificationCodeManager(store)


@pytest.fixture
def account_id(store: TrustStore) -> int:
    return store.create_account(Account(email="carol@example.com", hashed_password=_OLD_HASH))


class TestIssue:
    def test_code_shape_and_storage(self, store: TrustStore, codes: VerificationCodeManager, account_id: int) -> None:
        code = codes.issue_code(account_id, CodePurpose.ACTIVATE)
        assert len(code) == 43
        stored = store.get_code(code)
        assert stored is not None
        assert stored.is_active
        assert stored.purpose is CodePurpose.ACTIVATE
        assert stored.account_id == account_id

    def test_codes_are_unique(self, codes: VerificationCodeManager, account_id: int) -> None:
        issued = {codes.issue_code(account_id, CodePurpose.RECOVER) for _ in range(20)}
        assert len(issued) == 20

    def test_missing_account(self, codes: VerificationCodeManager) -> None:
        with pytest.raises(ResourceNotFound):
            codes.issue_code(999, CodePurpose.ACTIVATE)


class TestActivation:
    def test_consume_enables_account(self, store: TrustStore, codes: VerificationCodeManager, account_id: int) -> None:
        assert not store.get_account(account_id).is_enabled
        code = codes.issue_code(account_id, CodePurpose.ACTIVATE)

        outcome = codes.consume_code(code)

        assert outcome.purpose is CodePurpose.ACTIVATE
        assert outcome.account_id == account_id
        assert not outcome.reset_authorized
        assert store.get_account(account_id).is_enabled
        assert not store.get_code(code).is_active

    def test_second_consumption_is_already_consumed(
        self, codes: VerificationCodeManager, account_id: int
    ) -> None:
        code = codes.issue_code(account_id, CodePurpose.ACTIVATE)
        codes.consume_code(code)
        with pytest.raises(CodeAlreadyConsumed):
            codes.consume_code(code)

    def test_unknown_code(self, codes: VerificationCodeManager) -> None:
        with pytest.raises(CodeNotFound):
            codes.consume_code("no-such-code")

    def test_purpose_mismatch_leaves_code_active(
        self, store: TrustStore, codes: VerificationCodeManager, account_id: int
    ) -> None:
        code = codes.issue_code(account_id, CodePurpose.ACTIVATE)
        with pytest.raises(ValidationError):
            codes.consume_code(code, CodePurpose.RECOVER)
        assert store.get_code(code).is_active
        assert not store.get_account(account_id).is_enabled

    def test_consumption_does_not_touch_lock(
        self, store: TrustStore, codes: VerificationCodeManager, account_id: int
    ) -> None:
        store.set_locked(account_id, True)
        codes.consume_code(codes.issue_code(account_id, CodePurpose.ACTIVATE))
        assert store.get_account(account_id).is_locked


class TestRecovery:
    def test_consume_authorizes_but_does_not_reset(
        self, store: TrustStore, codes: VerificationCodeManager, account_id: int
    ) -> None:
        outcome = codes.consume_code(codes.issue_code(account_id, CodePurpose.RECOVER))
        assert outcome.reset_authorized
        assert outcome.account_id == account_id
        assert store.get_account(account_id).hashed_password == _OLD_HASH

    def test_redeem_sets_new_password(self, store: TrustStore, codes: VerificationCodeManager, account_id: int) -> None:
        code = codes.issue_code(account_id, CodePurpose.RECOVER)
        assert codes.redeem_recovery(code, "brand-new-pass", "brand-new-pass") == account_id
        assert verify_password("brand-new-pass", store.get_account(account_id).hashed_password)
        with pytest.raises(CodeAlreadyConsumed):
            codes.redeem_recovery(code, "another-pass", "another-pass")

    def test_mismatch_does_not_burn_code(self, store: TrustStore, codes: VerificationCodeManager, account_id: int) -> None:
        code = codes.issue_code(account_id, CodePurpose.RECOVER)
        with pytest.raises(ValidationError, match="do not match"):
            codes.redeem_recovery(code, "brand-new-pass", "brand-new-typo")
        assert store.get_code(code).is_active

    def test_activation_code_cannot_reset(self, codes: VerificationCodeManager, account_id: int) -> None:
        code = codes.issue_code(account_id, CodePurpose.ACTIVATE)
        with pytest.raises(ValidationError):
            codes.redeem_recovery(code, "brand-new-pass", "brand-new-pass")

    @pytest.mark.parametrize("new,confirm", [("", ""), (None, None), ("abcdefgh", None)])
    def test_reset_requires_both_values(
        self, codes: VerificationCodeManager, account_id: int, new, confirm
    ) -> None:
        with pytest.raises(ValidationError):
            codes.reset_password(account_id, new, confirm)

    def test_reset_missing_account(self, codes: VerificationCodeManager) -> None:
        with pytest.raises(ResourceNotFound):
            codes.reset_password(999, "brand-new-pass", "brand-new-pass")

    def test_deleting_account_deletes_its_codes(
        self, store: TrustStore, codes: VerificationCodeManager, account_id: int
    ) -> None:
        code = codes.issue_code(account_id, CodePurpose.RECOVER)
        store.delete_account(account_id)
        with pytest.raises(CodeNotFound):
            codes.consume_code(code)


class TestConcurrentConsumption:
    @pytest.mark.parametrize("purpose", [CodePurpose.ACTIVATE, CodePurpose.RECOVER])
    def test_exactly_one_consumer_wins(self, tmp_path, purpose: CodePurpose) -> None:
        store = TrustStore(f"sqlite:///{tmp_path / 'codes.db'}")
        try:
            codes = VerificationCodeManager(store)
            owner = store.create_account(Account(email="dave@example.com", hashed_password=_OLD_HASH))
            code = codes.issue_code(owner, purpose)
            start = threading.Barrier(8)

            def attempt(_: int) -> object:
                start.wait(timeout=5)
                try:
                    return codes.consume_code(code)
                except CodeAlreadyConsumed:
                    return "consumed"
                except CodeNotFound:
                    return "not-found"

            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(attempt, range(8)))

            outcomes = [r for r in results if isinstance(r, CodeOutcome)]
            assert len(outcomes) == 1
            assert outcomes[0].account_id == owner
            assert results.count("consumed") == 7
            assert "not-found" not in results
            assert not store.get_code(code).is_active
        finally:
            store.close()

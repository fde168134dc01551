import pytest

from lobster.errors import LobsterError
from lobster.models.billing import Transaction
from lobster.services.payment_service import (
    DuplicatePaymentMethodError,
    FakePayment,
    PaymentRegistry,
    build_payment_registry,
)


def test_duplicate_method_rejected(payments):
    with pytest.raises(DuplicatePaymentMethodError):
        payments.register("fake", FakePayment())


@pytest.mark.parametrize("amount", [4.99, 1000.01])
def test_amount_bounds(db_session, payments, user, amount):
    with pytest.raises(LobsterError) as exc_info:
        payments.handle(db_session, "fake", user.id, user.username, amount)
    assert exc_info.value.code == "amount_between"


def test_unknown_method(db_session, payments, user):
    with pytest.raises(LobsterError) as exc_info:
        payments.handle(db_session, "bitcoin", user.id, user.username, 10)
    assert exc_info.value.code == "invalid_payment_method"


def test_fake_payment_credits_account(db_session, payments, user):
    url = payments.handle(db_session, "fake", user.id, user.username, 12.5)
    assert url.startswith("/panel/billing?")
    db_session.refresh(user)
    assert user.credit == 10_000_000 + 12_500_000
    transaction = db_session.query(Transaction).one()
    assert transaction.gateway == "fake"


def test_build_payment_registry():
    registry = build_payment_registry({"payments": [{"type": "fake", "method": "demo"}]})
    assert registry.methods() == ["demo"]
    assert build_payment_registry({}).methods() == []
    with pytest.raises(ValueError):
        build_payment_registry({"payments": [{"type": "paypal"}]})

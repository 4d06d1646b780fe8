from __future__ import annotations

from decimal import Decimal

import pytest

from commission_engine.config import settings
from commission_engine.core.exceptions import PayoutRequestError
from commission_engine.models import DocumentSequence
from commission_engine.schemas.commission import PayoutRequestCreate, PayoutRequestResponse
from commission_engine.services.payout_service import PayoutService


@pytest.fixture
async def earned(service, scenario_a, make_payload):
    """P1 has 100.00 USD (10000 minor units) of pending commissions."""
    await service.process_commission_settlement(make_payload(scenario_a))
    return scenario_a


def payout(partner, amount: str, **kwargs) -> PayoutRequestCreate:
    return PayoutRequestCreate(partner_id=partner.id, requested_amount=Decimal(amount), **kwargs)


async def test_payable_balance_is_pending_earnings(db, earned) -> None:
    assert await PayoutService(db).get_payable_balance(earned.tenant.id, earned.p1.id) == 10000
    assert await PayoutService(db).get_payable_balance(earned.tenant.id, earned.p0.id) == 0


async def test_create_request_reserves_balance(db, earned) -> None:
    payouts = PayoutService(db)

    request = await payouts.create_payout_request(earned.tenant.id, payout(earned.p1, "60.00"))
    await db.commit()

    fy = DocumentSequence.get_financial_year(start_month=settings.FINANCIAL_YEAR_START_MONTH)
    assert request.request_number == f"PAY/ACME/{fy}/00001"
    assert request.requested_amount == 6000
    assert request.payable_balance_at_request == 10000
    assert request.request_status == "PENDING"
    assert request.currency == "USD"
    assert await payouts.get_payable_balance(earned.tenant.id, earned.p1.id) == 4000

    response = PayoutRequestResponse.model_validate(request)
    assert response.partner_code == "P1"


async def test_only_one_pending_request(db, earned) -> None:
    payouts = PayoutService(db)
    await payouts.create_payout_request(earned.tenant.id, payout(earned.p1, "10.00"))

    with pytest.raises(PayoutRequestError, match="pending payout request"):
        await payouts.create_payout_request(earned.tenant.id, payout(earned.p1, "10.00"))


async def test_request_above_balance_is_rejected(db, earned) -> None:
    with pytest.raises(PayoutRequestError, match="exceeds payable balance"):
        await PayoutService(db).create_payout_request(earned.tenant.id, payout(earned.p1, "100.01"))


async def test_sub_minor_amount_is_rejected(db, earned) -> None:
    with pytest.raises(PayoutRequestError, match="greater than zero"):
        await PayoutService(db).create_payout_request(earned.tenant.id, payout(earned.p1, "0.001"))


async def test_inactive_partner_is_rejected(db, builder, earned) -> None:
    dormant = await builder.partner(earned.tenant, "DORMANT", status="SUSPENDED")

    with pytest.raises(PayoutRequestError, match="not found or inactive"):
        await PayoutService(db).create_payout_request(earned.tenant.id, payout(dormant, "1.00"))


async def test_partner_of_other_tenant_is_not_found(db, builder, earned) -> None:
    other = await builder.tenant("OTHER")

    with pytest.raises(PayoutRequestError, match="not found or inactive"):
        await PayoutService(db).create_payout_request(other.id, payout(earned.p1, "1.00"))


async def test_list_requests_by_status(db, earned) -> None:
    payouts = PayoutService(db)
    await payouts.create_payout_request(
        earned.tenant.id, payout(earned.p1, "25.00", payment_method="upi", payment_details={"vpa": "p1@bank"})
    )
    await db.commit()

    pending = await payouts.list_payout_requests(earned.tenant.id, earned.p1.id, status="pending")
    paid = await payouts.list_payout_requests(earned.tenant.id, earned.p1.id, status="PAID")

    assert [r.requested_amount for r in pending] == [2500]
    assert pending[0].payment_method == "UPI"
    assert pending[0].payment_details == {"vpa": "p1@bank"}
    assert paid == []


async def test_balance_is_kept_per_currency(db, service, earned, make_payload) -> None:
    await service.process_commission_settlement(
        make_payload(earned, transaction_id="ORD-JPY", amount="1000", currency="JPY")
    )
    payouts = PayoutService(db)

    assert await payouts.get_payable_balance(earned.tenant.id, earned.p1.id) == 10000
    assert await payouts.get_payable_balance(earned.tenant.id, earned.p1.id, "usd") == 10000
    assert await payouts.get_payable_balance(earned.tenant.id, earned.p1.id, "JPY") == 100

    with pytest.raises(PayoutRequestError, match="exceeds payable balance"):
        await payouts.create_payout_request(earned.tenant.id, payout(earned.p1, "101", currency="JPY"))

    request = await payouts.create_payout_request(earned.tenant.id, payout(earned.p1, "100", currency="JPY"))

    assert request.payable_balance_at_request == 100
    assert await payouts.get_payable_balance(earned.tenant.id, earned.p1.id, "JPY") == 0
    assert await payouts.get_payable_balance(earned.tenant.id, earned.p1.id, "USD") == 10000


async def test_amount_beyond_decimal_precision_is_rejected(db, earned) -> None:
    with pytest.raises(PayoutRequestError, match="out of range"):
        await PayoutService(db).create_payout_request(earned.tenant.id, payout(earned.p1, "1e40"))

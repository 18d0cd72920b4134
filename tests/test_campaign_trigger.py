from datetime import datetime, timezone

import pytest

from payoutledger.models.settlement import SettlementPeriod, UserType


def test_campaign_completion_settles_both_parties(runtime, clock, make_tx, account) -> None:
    runtime.profiles.register("inf-1", UserType.INFLUENCER, bank_account=account)
    runtime.profiles.register("biz-1", UserType.BUSINESS, bank_account=account)
    first = datetime(2024, 3, 2, tzinfo=timezone.utc)
    runtime.ledger.add(make_tx("tx-1", "300000", user_id="inf-1", occurred_at=first, campaign_id="cmp-9"))
    runtime.ledger.add(make_tx("tx-2", "200000", user_id="inf-1", campaign_id="cmp-9"))
    runtime.ledger.add(make_tx("tx-3", "90000", user_id="inf-1", campaign_id="cmp-other"))
    runtime.ledger.add(make_tx("tx-4", "500000", user_id="biz-1", campaign_id="cmp-9"))

    created = runtime.campaigns.handle(
        "campaign.completed",
        {"campaign_id": "cmp-9", "influencer_id": "inf-1", "business_id": "biz-1"},
    )

    by_user = {settlement.user_id: settlement for settlement in created}
    influencer = by_user["inf-1"]
    assert influencer.user_type == UserType.INFLUENCER
    assert influencer.period.type == SettlementPeriod.CUSTOM
    assert influencer.period.start_date == first
    assert influencer.period.end_date == clock.now
    assert influencer.transaction_ids == ["tx-1", "tx-2"]
    assert influencer.metadata == {"campaign_id": "cmp-9", "type": "campaign_completion"}
    assert by_user["biz-1"].user_type == UserType.BUSINESS


def test_party_without_transactions_is_skipped(runtime, make_tx) -> None:
    runtime.ledger.add(make_tx("tx-1", "300000", user_id="inf-1", campaign_id="cmp-9"))

    created = runtime.campaigns.handle("settlement.trigger", {"campaign_id": "cmp-9", "influencer_id": "inf-1", "business_id": "biz-1"})

    assert [settlement.user_id for settlement in created] == ["inf-1"]


def test_unknown_event_is_rejected(runtime) -> None:
    with pytest.raises(ValueError):
        runtime.campaigns.handle("campaign.started", {"campaign_id": "cmp-9"})

"""Tests for referral codes, signups and activity tracking."""

import pytest

from conftest import ALICE, BOB, CAROL
from referral_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from referral_engine.services.link_service import LinkService
from referral_engine.services.referral_service import CODE_ALPHABET, ReferralService


@pytest.mark.asyncio
async def test_code_is_stable_per_address(test_session):
    service = ReferralService(test_session)

    first = await service.get_or_create_code(ALICE)
    second = await service.get_or_create_code(ALICE.upper().replace("0X", "0x"))

    assert first.code == second.code
    assert len(first.code) == 8
    assert set(first.code) <= set(CODE_ALPHABET)


@pytest.mark.asyncio
async def test_code_lookup_is_case_insensitive(test_session):
    service = ReferralService(test_session)
    code = await service.get_or_create_code(ALICE)

    found = await service.get_code_by_string(f"  {code.code.lower()} ")

    assert found.address == ALICE


@pytest.mark.asyncio
async def test_code_info(test_session, active_milestone_period):
    service = ReferralService(test_session)
    code = await service.get_or_create_code(ALICE)
    await service.track_signup(code.code, BOB)

    info = (await service.get_code_info(ALICE)).to_dict()

    assert info["code"] == code.code
    assert info["shareUrl"].endswith(f"?ref={code.code}")
    assert info["referralCount"] == 1
    assert info["uses"] == 1


@pytest.mark.asyncio
async def test_signup_links_in_active_period(test_session, active_milestone_period):
    service = ReferralService(test_session)
    code = await service.get_or_create_code(ALICE)

    link = await service.track_signup(code.code, BOB)

    assert link.period_id == active_milestone_period.id
    assert link.referrer_address == ALICE
    assert link.referred_address == BOB
    assert link.status == "pending"
    assert await service.get_referrer(BOB) == ALICE


@pytest.mark.asyncio
async def test_signup_without_active_period_records_referrer_only(test_session):
    service = ReferralService(test_session)
    code = await service.get_or_create_code(ALICE)

    link = await service.track_signup(code.code, BOB)

    assert link is None
    assert await service.get_referrer(BOB) == ALICE
    assert await LinkService(test_session).get_referrals_for_user(ALICE) == []


@pytest.mark.asyncio
async def test_self_referral_rejected(test_session, active_milestone_period):
    service = ReferralService(test_session)
    code = await service.get_or_create_code(ALICE)

    with pytest.raises(ConflictError) as exc_info:
        await service.track_signup(code.code, ALICE)

    assert exc_info.value.code == "self_referral"


@pytest.mark.asyncio
async def test_second_signup_rejected(test_session, active_milestone_period):
    service = ReferralService(test_session)
    alice_code = await service.get_or_create_code(ALICE)
    carol_code = await service.get_or_create_code(CAROL)
    await service.track_signup(alice_code.code, BOB)

    with pytest.raises(ConflictError) as exc_info:
        await service.track_signup(carol_code.code, BOB)

    assert exc_info.value.code == "already_referred"
    assert await service.get_referrer(BOB) == ALICE


@pytest.mark.asyncio
async def test_unknown_code_rejected(test_session):
    with pytest.raises(NotFoundError):
        await ReferralService(test_session).track_signup("NOPE2345", BOB)


@pytest.mark.asyncio
async def test_link_rejects_self_and_duplicates(test_session, active_milestone_period):
    links = LinkService(test_session)
    with pytest.raises(ConflictError):
        await links.create_referral_link(active_milestone_period.id, ALICE, ALICE, "CODE2345")

    await links.create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")
    with pytest.raises(ConflictError):
        await links.create_referral_link(active_milestone_period.id, CAROL, BOB, "CODE2345")
    with pytest.raises(NotFoundError):
        await links.create_referral_link(9999, ALICE, CAROL, "CODE2345")


@pytest.mark.asyncio
async def test_first_bet_activates_link(test_session, active_milestone_period):
    links = LinkService(test_session)
    await links.create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")

    link = await links.track_bet(BOB, 12.5)
    first_bet_at = link.first_bet_at
    link = await links.track_bet(BOB, 7.5)

    assert link.status == "active"
    assert link.lifetime_volume == 20.0
    assert link.first_bet_at == first_bet_at
    assert link.last_bet_at >= first_bet_at


@pytest.mark.asyncio
async def test_bet_without_link_is_ignored(test_session, active_milestone_period):
    links = LinkService(test_session)
    assert await links.track_bet(CAROL, 10) is None
    with pytest.raises(ValidationError):
        await links.track_bet(CAROL, -1)


@pytest.mark.asyncio
async def test_referrals_listed_newest_first(test_session, active_milestone_period):
    links = LinkService(test_session)
    await links.create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")
    await links.create_referral_link(active_milestone_period.id, ALICE, CAROL, "CODE2345")

    referrals = await links.get_referrals_for_user(ALICE)

    assert [link.referred_address for link in referrals] == [CAROL, BOB]

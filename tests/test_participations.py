import asyncio
import itertools

import pytest

from jpgtickets.errors import ParticipationNotFound, ValidationError
from jpgtickets.infra.sql import open_database
from jpgtickets.model.changefeed import MemoryChangeFeed
from jpgtickets.model.db import Base
from jpgtickets.model.participations import ParticipationStore
from jpgtickets.model.tournaments import TournamentStore


def run(tmp_path, scenario):
    async def _go():
        database = open_database(f"sqlite:///{tmp_path / 'store.db'}")
        await database.create_all(Base.metadata)
        gated = database.gated
        feed = MemoryChangeFeed()
        try:
            async with database.SessionAsync() as s1, \
                    database.SessionAsync() as s2:
                tournaments = TournamentStore(db=s1, gated=gated)
                t = await tournaments.create({"name": "Copa",
                                              "max_participants": 2})
                stores = (ParticipationStore(db=s1, gated=gated, feed=feed),
                          ParticipationStore(db=s2, gated=gated, feed=feed))
                return await scenario(stores, t, feed)
        finally:
            await database.dispose()
    return asyncio.run(_go())


def tokens():
    counter = itertools.count(1)
    return lambda: f"JPG-FF-{next(counter):05d}"


def test_paid_mints_once_across_deliveries(tmp_path):
    async def scenario(stores, t, feed):
        a, b = stores
        p = await a.create(user_id="u1", tournament_id=t["id"])
        make = tokens()
        # redelivery lands on a different session
        results = [
            await a.apply_status(p["id"], "paid", token_factory=make),
            await b.apply_status(p["id"], "paid", token_factory=make),
        ]
        return p, results, await a.require(p["id"])

    p, results, row = run(tmp_path, scenario)
    assert sum(r["token_minted"] for r in results) == 1
    assert {r["row"]["unique_token"] for r in results} == {row["unique_token"]}
    assert row["payment_status"] == "paid"


def test_regression_is_applied_and_flagged(tmp_path):
    async def scenario(stores, t, feed):
        a, _ = stores
        p = await a.create(user_id="u1", tournament_id=t["id"])
        make = tokens()
        first = await a.apply_status(p["id"], "paid", token_factory=make)
        back = await a.apply_status(p["id"], "pending", token_factory=make)
        return first, back

    first, back = run(tmp_path, scenario)
    assert first["regressed"] is False
    assert first["previous_status"] == "pending"
    assert back["regressed"] is True
    assert back["row"]["payment_status"] == "pending"
    assert back["row"]["unique_token"] == first["row"]["unique_token"]


def test_changes_are_published(tmp_path):
    async def scenario(stores, t, feed):
        a, _ = stores
        p = await a.create(user_id="u1", tournament_id=t["id"])
        seen = []

        async def listen():
            async for change in feed.subscribe(p["id"]):
                seen.append(change)
                if change["payment_status"] == "paid":
                    return

        listener = asyncio.create_task(listen())
        await asyncio.sleep(0)
        await a.attach_charge(p["id"], "555")
        await a.apply_status(p["id"], "paid", token_factory=tokens())
        await asyncio.wait_for(listener, 2)
        return seen

    seen = run(tmp_path, scenario)
    assert [c["payment_status"] for c in seen] == ["pending", "paid"]
    assert seen[-1]["unique_token"] == "JPG-FF-00001"


def test_provider_id_is_written_once(tmp_path):
    async def scenario(stores, t, feed):
        a, _ = stores
        p = await a.create(user_id="u1", tournament_id=t["id"])
        first = await a.attach_charge(p["id"], "111")
        await a.apply_status(p["id"], "failed", token_factory=tokens())
        second = await a.attach_charge(p["id"], "222")
        return first, second, await a.require(p["id"])

    first, second, row = run(tmp_path, scenario)
    assert first is True
    assert second is False
    assert row["mercado_pago_payment_id"] == "111"
    assert row["payment_status"] == "failed"


def test_unknown_participation(tmp_path):
    async def scenario(stores, t, feed):
        a, _ = stores
        with pytest.raises(ParticipationNotFound):
            await a.apply_status("nope", "paid", token_factory=tokens())
        with pytest.raises(ParticipationNotFound):
            await a.attach_charge("nope", "1")
        with pytest.raises(ParticipationNotFound):
            await a.reject("nope")

    run(tmp_path, scenario)


def test_slot_is_unique_per_tournament(tmp_path):
    async def scenario(stores, t, feed):
        a, _ = stores
        p1 = await a.create(user_id="u1", tournament_id=t["id"])
        p2 = await a.create(user_id="u2", tournament_id=t["id"])
        for p in (p1, p2):
            await a.apply_status(p["id"], "paid", token_factory=tokens())
        return (await a.assign_slot(p1["id"], 1),
                await a.assign_slot(p2["id"], 1),
                await a.assign_slot(p1["id"], 2),
                await a.used_slots(t["id"]))

    first, clash, again, used = run(tmp_path, scenario)
    assert first is True
    assert clash is False
    assert again is False
    assert used == {1}


def test_reject_only_pending(tmp_path):
    async def scenario(stores, t, feed):
        a, _ = stores
        p = await a.create(user_id="u1", tournament_id=t["id"])
        await a.apply_status(p["id"], "paid", token_factory=tokens())
        with pytest.raises(ValidationError):
            await a.reject(p["id"])

    run(tmp_path, scenario)

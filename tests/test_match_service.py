"""
tests/test_match_service.py — Challenge/Poll Matchmaking Tests
===============================================================
Service-level tests for match_service: pairing, fees, daily limits,
voting, finalization and cancellation.

Uses an in-memory SQLite database via the shared conftest fixtures.  Every
call passes an explicit ``now`` so calendar boundaries are deterministic.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from conftest import points_of
from verse.config import VerseConfig
from verse.database.engine import create_db_engine, get_session, init_db
from verse.database.models import Challenge, User
from verse.services import match_service
from verse.services.errors import ForbiddenError, NotFoundError, ServiceError

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
CLIP = "/api/uploads/clip.mp4"


@pytest.fixture
def engine(db_engine):
    return db_engine


def _create(engine, cfg, user_id, category="photography", kind="challenge",
            submission=None, now=NOW):
    return match_service.create_entry(
        engine, cfg,
        kind=kind,
        user_id=user_id,
        category=category,
        submission=submission,
        now=now,
    )


def _closed_entry(engine, challenger_id, opponent_id, kind="challenge", now=NOW) -> int:
    """Insert a matched, fully-submitted entry directly."""
    with get_session(engine) as session:
        entry = Challenge(
            kind=kind,
            category="music",
            challenger_id=challenger_id,
            opponent_id=opponent_id,
            challenger_media=CLIP,
            opponent_media=CLIP,
            status="closed",
            matched_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
        session.flush()
        return entry.id


def _vote(engine, cfg, entry_id, voter_id, option="challenger", kind="challenge", now=NOW):
    return match_service.cast_vote(
        engine, cfg,
        kind=kind,
        entry_id=entry_id,
        voter_id=voter_id,
        option=option,
        now=now,
    )


# ===========================================================================
# Creating & matching
# ===========================================================================
class TestCreateEntry:
    def test_first_entry_waits_as_pending(self, engine, cfg, make_user):
        alice = make_user("alice", points=100)

        result = _create(engine, cfg, alice)

        assert result.matched is False
        assert result.entry["status"] == "pending"
        assert result.entry["challenger"]["_id"] == alice
        assert result.entry["opponent"] is None
        assert result.attempts_left == 2
        assert points_of(engine, alice) == 90

    def test_second_user_with_submission_closes_match(self, engine, cfg, make_user):
        alice = make_user("alice", points=100)
        bob = make_user("bob", points=100)
        first = _create(engine, cfg, alice, submission=CLIP)

        second = _create(engine, cfg, bob, submission=CLIP, now=NOW + timedelta(minutes=5))

        assert second.matched is True
        assert second.entry["_id"] == first.entry["_id"]
        assert second.entry["status"] == "closed"
        assert second.entry["opponent"]["_id"] == bob
        assert second.entry["opponentSubmission"] == CLIP
        assert points_of(engine, alice) == 80  # charged again when matched
        assert points_of(engine, bob) == 90

    def test_match_without_submission_is_open(self, engine, cfg, make_user):
        alice = make_user(points=100)
        bob = make_user(points=100)
        _create(engine, cfg, alice)

        result = _create(engine, cfg, bob)

        assert result.matched is True
        assert result.entry["status"] == "open"

    def test_category_is_normalized(self, engine, cfg, make_user):
        alice = make_user(points=100)
        bob = make_user(points=100)
        _create(engine, cfg, alice, category="  Photography ")

        result = _create(engine, cfg, bob, category="photography")

        assert result.matched is True
        assert result.entry["category"] == "photography"

    def test_never_matches_own_entry(self, engine, cfg, make_user):
        alice = make_user(points=100)
        _create(engine, cfg, alice)

        again = _create(engine, cfg, alice)

        assert again.matched is False
        assert points_of(engine, alice) == 80

    def test_kinds_do_not_cross_match(self, engine, cfg, make_user):
        alice = make_user(points=100)
        bob = make_user(points=100)
        _create(engine, cfg, alice, kind="challenge")

        result = _create(engine, cfg, bob, kind="poll")

        assert result.matched is False
        assert result.entry["kind"] == "poll"

    def test_stale_waiting_entry_is_not_matched(self, engine, cfg, make_user):
        alice = make_user(points=100)
        bob = make_user(points=100)
        _create(engine, cfg, alice, now=NOW - timedelta(hours=25))

        result = _create(engine, cfg, bob)

        assert result.matched is False

    def test_oldest_waiting_entry_wins(self, engine, cfg, make_user):
        alice = make_user(points=100)
        carol = make_user(points=100)
        bob = make_user(points=100)
        oldest = _create(engine, cfg, alice, now=NOW - timedelta(hours=2))
        _create(engine, cfg, carol, now=NOW - timedelta(hours=1))

        result = _create(engine, cfg, bob)

        assert result.entry["_id"] == oldest.entry["_id"]

    def test_skips_challenger_who_can_no_longer_pay(self, engine, cfg, make_user):
        broke = make_user(points=10)
        bob = make_user(points=100)
        _create(engine, cfg, broke)
        assert points_of(engine, broke) == 0

        result = _create(engine, cfg, bob)

        assert result.matched is False
        assert points_of(engine, broke) == 0
        assert points_of(engine, bob) == 90

    def test_insufficient_points_rejected_without_charge(self, engine, cfg, make_user):
        poor = make_user(points=5)

        with pytest.raises(ServiceError, match="Not enough versePoints."):
            _create(engine, cfg, poor)
        assert points_of(engine, poor) == 5

    def test_category_required(self, engine, cfg, make_user):
        alice = make_user(points=100)
        with pytest.raises(ServiceError, match="Category is required"):
            _create(engine, cfg, alice, category="   ")
        assert points_of(engine, alice) == 100


# ===========================================================================
# Daily attempt limit
# ===========================================================================
class TestDailyLimit:
    def test_fourth_attempt_rejected(self, engine, cfg, make_user):
        alice = make_user(points=100)

        left = [_create(engine, cfg, alice, category=f"c{i}").attempts_left for i in range(3)]
        assert left == [2, 1, 0]

        with pytest.raises(ServiceError, match="3 challenges per day max."):
            _create(engine, cfg, alice, category="c4")
        assert points_of(engine, alice) == 70

    def test_limit_is_per_kind(self, engine, cfg, make_user):
        alice = make_user(points=100)
        for i in range(3):
            _create(engine, cfg, alice, category=f"c{i}")

        result = _create(engine, cfg, alice, kind="poll")

        assert result.attempts_left == 2

    def test_joining_as_opponent_does_not_count(self, engine, cfg, make_user):
        hosts = [make_user(points=100) for _ in range(3)]
        joiner = make_user(points=100)
        for i, host in enumerate(hosts):
            _create(engine, cfg, host, category=f"c{i}")

        joins = [_create(engine, cfg, joiner, category=f"c{i}") for i in range(3)]
        assert all(j.matched for j in joins)
        assert [j.attempts_left for j in joins] == [3, 3, 3]

        own = _create(engine, cfg, joiner, category="fresh")

        assert own.matched is False
        assert own.attempts_left == 2

    def test_counter_resets_at_local_midnight(self, engine, make_user):
        # 03:00 UTC on 10 March is 23:00 on 9 March in New York (EDT)
        cfg = VerseConfig(timezone="America/New_York")
        late_evening = datetime(2026, 3, 10, 3, 0, tzinfo=UTC)
        alice = make_user(points=100)
        for i in range(3):
            _create(engine, cfg, alice, category=f"c{i}", now=late_evening)

        after_midnight = late_evening + timedelta(hours=2)
        result = _create(engine, cfg, alice, category="c9", now=after_midnight)

        assert result.attempts_left == 2


# ===========================================================================
# Opponent submission
# ===========================================================================
class TestSubmission:
    def _open_match(self, engine, cfg, make_user):
        alice = make_user(points=100)
        bob = make_user(points=100)
        _create(engine, cfg, alice, submission=CLIP)
        entry = _create(engine, cfg, bob).entry
        return entry["_id"], alice, bob

    def test_opponent_submission_opens_voting(self, engine, cfg, make_user):
        entry_id, _, bob = self._open_match(engine, cfg, make_user)

        entry = match_service.submit_opponent_media(
            engine, kind="challenge", entry_id=entry_id, user_id=bob, media_url=CLIP
        )

        assert entry["status"] == "closed"
        assert entry["opponentSubmission"] == CLIP

    def test_only_the_opponent_may_submit(self, engine, cfg, make_user):
        entry_id, alice, _ = self._open_match(engine, cfg, make_user)

        with pytest.raises(ForbiddenError, match="Not authorized or already submitted."):
            match_service.submit_opponent_media(
                engine, kind="challenge", entry_id=entry_id, user_id=alice, media_url=CLIP
            )

    def test_second_submission_rejected(self, engine, cfg, make_user):
        entry_id, _, bob = self._open_match(engine, cfg, make_user)
        match_service.submit_opponent_media(
            engine, kind="challenge", entry_id=entry_id, user_id=bob, media_url=CLIP
        )

        with pytest.raises(ForbiddenError):
            match_service.submit_opponent_media(
                engine, kind="challenge", entry_id=entry_id, user_id=bob, media_url=CLIP
            )

    def test_missing_entry_is_404(self, engine, make_user):
        bob = make_user()
        with pytest.raises(NotFoundError):
            match_service.submit_opponent_media(
                engine, kind="challenge", entry_id=999, user_id=bob, media_url=CLIP
            )


# ===========================================================================
# Voting
# ===========================================================================
class TestVoting:
    def test_vote_is_recorded_and_rewarded(self, engine, cfg, make_user):
        alice, bob, carol = make_user(), make_user(), make_user(points=50)
        entry_id = _closed_entry(engine, alice, bob)

        entry = _vote(engine, cfg, entry_id, carol, "challenger")

        assert entry["votesChallenger"] == 1
        assert entry["votesOpponent"] == 0
        assert entry["hasVoted"] is True
        assert entry["pointsAwarded"] == 1
        assert points_of(engine, carol) == 51

    def test_duplicate_vote_rejected(self, engine, cfg, make_user):
        alice, bob, carol = make_user(), make_user(), make_user(points=50)
        entry_id = _closed_entry(engine, alice, bob)
        _vote(engine, cfg, entry_id, carol, "challenger")

        with pytest.raises(ServiceError, match="Already voted."):
            _vote(engine, cfg, entry_id, carol, "opponent")

        entry = match_service.get_entry(
            engine, kind="challenge", entry_id=entry_id, viewer_id=carol
        )
        assert len(entry["votes"]) == 1
        assert points_of(engine, carol) == 51

    @pytest.mark.parametrize("who", ["challenger", "opponent"])
    def test_participants_cannot_vote(self, engine, cfg, make_user, who):
        alice, bob = make_user(), make_user()
        entry_id = _closed_entry(engine, alice, bob)
        voter = alice if who == "challenger" else bob

        with pytest.raises(ServiceError, match="Cannot vote on your own challenge."):
            _vote(engine, cfg, entry_id, voter, "challenger")

    def test_vote_before_both_submissions_rejected(self, engine, cfg, make_user):
        alice, bob, carol = make_user(points=100), make_user(points=100), make_user()
        _create(engine, cfg, alice)
        entry_id = _create(engine, cfg, bob).entry["_id"]

        with pytest.raises(ServiceError, match="Voting is not open."):
            _vote(engine, cfg, entry_id, carol)

    def test_challenged_is_an_alias_for_opponent(self, engine, cfg, make_user):
        alice, bob, carol = make_user(), make_user(), make_user()
        entry_id = _closed_entry(engine, alice, bob)

        entry = _vote(engine, cfg, entry_id, carol, "challenged")

        assert entry["votesOpponent"] == 1
        assert entry["votes"] == [{"voter": carol, "option": "opponent"}]

    def test_unknown_option_rejected(self, engine, cfg, make_user):
        alice, bob, carol = make_user(), make_user(), make_user()
        entry_id = _closed_entry(engine, alice, bob)
        with pytest.raises(ServiceError, match="Invalid vote option."):
            _vote(engine, cfg, entry_id, carol, "both")

    def test_missing_entry_is_404(self, engine, cfg, make_user):
        carol = make_user()
        with pytest.raises(NotFoundError):
            _vote(engine, cfg, 12345, carol)

    def test_daily_vote_reward_cap(self, engine, make_user):
        cfg = VerseConfig(daily_vote_cap=2)
        alice, bob, carol = make_user(), make_user(), make_user(points=50)
        entries = [_closed_entry(engine, alice, bob) for _ in range(4)]

        awarded = [_vote(engine, cfg, e, carol)["pointsAwarded"] for e in entries[:3]]
        assert awarded == [1, 1, 0]
        assert points_of(engine, carol) == 52

        next_day = _vote(engine, cfg, entries[3], carol, now=NOW + timedelta(days=1))
        assert next_day["pointsAwarded"] == 1
        with get_session(engine) as session:
            user = session.get(User, carol)
            assert user.verse_points == 53
            assert user.vote_points_earned_today == 1


# ===========================================================================
# Finalization
# ===========================================================================
class TestFinalize:
    def test_majority_side_wins_once(self, engine, cfg, make_user):
        alice, bob = make_user(points=90), make_user(points=90)
        carol, dave = make_user(), make_user()
        entry_id = _closed_entry(engine, alice, bob)
        _vote(engine, cfg, entry_id, carol, "challenger")
        _vote(engine, cfg, entry_id, dave, "challenger")

        entry = match_service.finalize_entry(engine, cfg, kind="challenge", entry_id=entry_id)

        assert entry["finalized"] is True
        assert entry["winner"] == alice
        assert points_of(engine, alice) == 110
        assert points_of(engine, bob) == 90

        with pytest.raises(ServiceError, match="Already finalized."):
            match_service.finalize_entry(engine, cfg, kind="challenge", entry_id=entry_id)
        assert points_of(engine, alice) == 110

    def test_tie_awards_nobody(self, engine, cfg, make_user):
        alice, bob = make_user(points=90), make_user(points=90)
        entry_id = _closed_entry(engine, alice, bob)

        entry = match_service.finalize_entry(engine, cfg, kind="challenge", entry_id=entry_id)

        assert entry["finalized"] is True
        assert entry["winner"] is None
        assert points_of(engine, alice) == 90
        assert points_of(engine, bob) == 90

    def test_poll_bonus_differs(self, engine, cfg, make_user):
        alice, bob, carol = make_user(points=90), make_user(points=90), make_user()
        entry_id = _closed_entry(engine, alice, bob, kind="poll")
        _vote(engine, cfg, entry_id, carol, "opponent", kind="poll")

        match_service.finalize_entry(engine, cfg, kind="poll", entry_id=entry_id)

        assert points_of(engine, bob) == 100

    def test_open_entry_cannot_be_finalized(self, engine, cfg, make_user):
        alice = make_user(points=100)
        entry_id = _create(engine, cfg, alice).entry["_id"]

        with pytest.raises(ServiceError, match="Still open."):
            match_service.finalize_entry(engine, cfg, kind="challenge", entry_id=entry_id)

    def test_no_votes_after_finalization(self, engine, cfg, make_user):
        alice, bob, carol = make_user(), make_user(), make_user()
        entry_id = _closed_entry(engine, alice, bob)
        match_service.finalize_entry(engine, cfg, kind="challenge", entry_id=entry_id)

        with pytest.raises(ServiceError, match="Voting is not open."):
            _vote(engine, cfg, entry_id, carol)

    def test_wrong_kind_is_404(self, engine, cfg, make_user):
        alice, bob = make_user(), make_user()
        entry_id = _closed_entry(engine, alice, bob, kind="challenge")
        with pytest.raises(NotFoundError):
            match_service.finalize_entry(engine, cfg, kind="poll", entry_id=entry_id)


# ===========================================================================
# Cancellation
# ===========================================================================
class TestCancel:
    def test_cancel_refunds_fee(self, engine, cfg, make_user):
        alice = make_user(points=100)
        entry_id = _create(engine, cfg, alice).entry["_id"]

        cancelled = match_service.cancel_entry(engine, cfg, kind="challenge", user_id=alice)

        assert cancelled == entry_id
        assert points_of(engine, alice) == 100
        with pytest.raises(NotFoundError):
            match_service.get_entry(engine, kind="challenge", entry_id=entry_id, viewer_id=alice)

    def test_nothing_to_cancel(self, engine, cfg, make_user):
        alice = make_user(points=100)
        with pytest.raises(NotFoundError, match="No pending challenge to cancel."):
            match_service.cancel_entry(engine, cfg, kind="challenge", user_id=alice)

    def test_matched_entry_cannot_be_cancelled(self, engine, cfg, make_user):
        alice, bob = make_user(points=100), make_user(points=100)
        entry_id = _create(engine, cfg, alice).entry["_id"]
        _create(engine, cfg, bob)

        with pytest.raises(NotFoundError):
            match_service.cancel_entry(
                engine, cfg, kind="challenge", user_id=alice, entry_id=entry_id
            )
        assert points_of(engine, alice) == 90

    def test_cannot_cancel_someone_elses_entry(self, engine, cfg, make_user):
        alice, mallory = make_user(points=100), make_user(points=100)
        entry_id = _create(engine, cfg, alice).entry["_id"]

        with pytest.raises(NotFoundError):
            match_service.cancel_entry(
                engine, cfg, kind="challenge", user_id=mallory, entry_id=entry_id
            )
        assert points_of(engine, mallory) == 100


# ===========================================================================
# Listing
# ===========================================================================
class TestListing:
    def test_groups_and_has_voted(self, engine, cfg, make_user):
        alice, bob = make_user(points=100), make_user(points=100)
        carol, dave = make_user(points=100), make_user()
        closed_id = _closed_entry(engine, alice, bob)
        pending = _create(engine, cfg, carol, category="dance")
        _vote(engine, cfg, closed_id, dave)

        listing = match_service.list_entries(
            engine, cfg, kind="challenge", viewer_id=dave, now=NOW
        )

        assert [e["_id"] for e in listing["active"]] == [closed_id]
        assert listing["active"][0]["hasVoted"] is True
        assert [e["_id"] for e in listing["pending"]] == [pending.entry["_id"]]
        assert listing["pending"][0]["hasVoted"] is False
        assert listing["past"] == []

    def test_past_holds_own_entries(self, engine, cfg, make_user):
        alice, bob = make_user(), make_user()
        closed_id = _closed_entry(engine, alice, bob)

        listing = match_service.list_entries(
            engine, cfg, kind="challenge", viewer_id=bob, now=NOW
        )

        assert [e["_id"] for e in listing["past"]] == [closed_id]


# ===========================================================================
# End-to-end scenario
# ===========================================================================
class TestScenario:
    def test_challenge_lifecycle(self, engine, cfg, make_user):
        a = make_user("a", points=100)
        b = make_user("b", points=100)
        c = make_user("c", points=50)

        created = _create(engine, cfg, a)
        assert created.entry["status"] == "pending"
        assert created.attempts_left == 2
        assert points_of(engine, a) == 90

        matched = _create(engine, cfg, b, submission=CLIP)
        assert matched.entry["status"] == "closed"
        assert points_of(engine, b) == 90
        assert points_of(engine, a) == 80

        voted = _vote(engine, cfg, matched.entry["_id"], c, "challenger")
        assert len(voted["votes"]) == 1

        final = match_service.finalize_entry(
            engine, cfg, kind="challenge", entry_id=matched.entry["_id"]
        )
        assert final["winner"] == a
        assert points_of(engine, a) == 80 + cfg.winner_bonus("challenge")
        with pytest.raises(ServiceError, match="Already finalized."):
            match_service.finalize_entry(
                engine, cfg, kind="challenge", entry_id=matched.entry["_id"]
            )


# ===========================================================================
# Concurrent matching
# ===========================================================================
@pytest.fixture
def file_engine(tmp_path):
    """A file-backed SQLite database, pooled like local development."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'dev.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


def _add_users(engine, count: int, points: int = 100) -> list[int]:
    with get_session(engine) as session:
        users = [
            User(username=f"racer{i}", email=f"racer{i}@example.com", verse_points=points)
            for i in range(count)
        ]
        session.add_all(users)
        session.flush()
        return [u.id for u in users]


class TestConcurrentMatching:
    def test_file_database_gets_a_real_pool(self, file_engine):
        assert not isinstance(file_engine.pool, StaticPool)

    def test_simultaneous_joins_pair_each_entry_once(self, file_engine, cfg):
        host, *joiners = _add_users(file_engine, 9)
        first = _create(file_engine, cfg, host, kind="poll", category="art")
        start = threading.Barrier(len(joiners))

        def join(user_id):
            start.wait()
            return _create(file_engine, cfg, user_id, kind="poll", category="art")

        with ThreadPoolExecutor(max_workers=len(joiners)) as pool:
            results = list(pool.map(join, joiners))

        matched_ids = [r.entry["_id"] for r in results if r.matched]
        assert first.entry["_id"] in matched_ids
        assert len(matched_ids) == len(set(matched_ids))

        with get_session(file_engine) as session:
            entries = session.scalars(select(Challenge)).all()
            assert sum(1 for e in entries if e.opponent_id is not None) == len(matched_ids)
            total = sum(session.scalars(select(User.verse_points)).all())

        # every call pays once; every pairing also charges the waiting challenger
        charged = cfg.entry_fee * (1 + len(joiners) + len(matched_ids))
        assert total == 100 * (1 + len(joiners)) - charged
        assert points_of(file_engine, host) == 80

    def test_claim_lost_to_another_joiner_moves_on(self, engine, cfg, make_user, monkeypatch):
        alice, carol = make_user(points=100), make_user(points=100)
        rival, bob = make_user(points=100), make_user(points=100)
        oldest = _create(engine, cfg, alice, now=NOW - timedelta(hours=2)).entry["_id"]
        newer = _create(engine, cfg, carol, now=NOW - timedelta(hours=1)).entry["_id"]

        real_begin_nested = Session.begin_nested
        raced = {"done": False}

        def claimed_first_by_rival(self):
            # Another request takes the oldest entry between listing and claiming
            if not raced["done"]:
                raced["done"] = True
                self.execute(
                    update(Challenge)
                    .where(Challenge.id == oldest)
                    .values(opponent_id=rival, status="open", matched_at=NOW)
                )
            return real_begin_nested(self)

        monkeypatch.setattr(Session, "begin_nested", claimed_first_by_rival)

        result = _create(engine, cfg, bob)

        assert result.matched is True
        assert result.entry["_id"] == newer
        assert points_of(engine, alice) == 90
        assert points_of(engine, carol) == 80
        assert points_of(engine, bob) == 90
        assert match_service.get_entry(
            engine, kind="challenge", entry_id=oldest, viewer_id=rival
        )["opponent"]["_id"] == rival

"""
verse.services.match_service — Challenge / poll matchmaking & scoring
======================================================================

Challenges and polls are the same game under two names: a user pays an
entry fee to post a submission in a category, the next user entering the
same category is paired with them, the community votes, and the side with
more votes wins a bonus.  Both live in the ``challenges`` table, told apart
by ``kind``.

Every invariant is enforced by a single conditional write, never by a read
followed by an unguarded write:

* pairing:    ``UPDATE … WHERE status='pending' AND opponent_id IS NULL``
* fees:       ``UPDATE users … WHERE verse_points >= fee``
* voting:     ``INSERT … SELECT … WHERE <not a participant, voting open>``
              plus the (challenge_id, voter_id) primary key
* finalizing: ``UPDATE … SET finalized=true WHERE finalized=false``
* cancelling: ``DELETE … WHERE status='pending' AND challenger_id=me``

All steps of one operation share a transaction (:func:`get_session`), so a
failure halfway leaves no fee charged and no entry changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import (
    case,
    delete,
    exists,
    func,
    insert,
    literal,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from verse.database.engine import get_session
from verse.database.models import (
    Challenge,
    ChallengeVote,
    EntryKind,
    EntryStatus,
    User,
    VoteSide,
    utcnow,
)
from verse.serializers import challenge_dict
from verse.services.errors import ForbiddenError, NotFoundError, ServiceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from verse.config import VerseConfig

logger = logging.getLogger(__name__)

VOTE_ALIASES = {
    "challenger": VoteSide.CHALLENGER,
    "opponent": VoteSide.OPPONENT,
    "challenged": VoteSide.OPPONENT,
}


@dataclass
class CreateResult:
    """Outcome of :func:`create_entry`."""
    entry: dict
    attempts_left: int
    matched: bool

    @property
    def message(self) -> str:
        if not self.matched:
            return "Entry created. Waiting for a match."
        if self.entry["status"] == EntryStatus.CLOSED:
            return "Matched! Voting is open."
        return "Matched! Upload your submission to open voting."


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------
def local_today(cfg: VerseConfig, now: datetime | None = None) -> date:
    now = now or datetime.now(UTC)
    return now.astimezone(cfg.tz).date()


def start_of_local_day(cfg: VerseConfig, now: datetime | None = None) -> datetime:
    """Local midnight of *now*'s day, expressed in UTC."""
    today = local_today(cfg, now)
    return datetime.combine(today, time.min, tzinfo=cfg.tz).astimezone(UTC)


def normalize_category(raw: str | None) -> str:
    category = (raw or "").strip().lower()
    if not category:
        raise ServiceError("Category is required.")
    return category


def _kind(kind: str) -> EntryKind:
    try:
        return EntryKind(kind)
    except ValueError:
        raise ServiceError(f"Unknown entry kind: {kind!r}") from None


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------
def _charge(session: Session, user_id: int, amount: int) -> bool:
    """Deduct *amount* only if the balance covers it.  True on success."""
    result = session.execute(
        update(User)
        .where(User.id == user_id, User.verse_points >= amount)
        .values(verse_points=User.verse_points - amount)
    )
    return result.rowcount == 1


def _credit(session: Session, user_id: int, amount: int) -> None:
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(verse_points=User.verse_points + amount)
    )


def _entries_created(session: Session, user_id: int, kind: EntryKind, since: datetime) -> int:
    """Entries of *kind* the user opened as challenger since *since*.

    Joining someone else's entry as opponent does not count.
    """
    return session.scalar(
        select(func.count())
        .select_from(Challenge)
        .where(
            Challenge.kind == kind.value,
            Challenge.challenger_id == user_id,
            Challenge.created_at >= since,
        )
    ) or 0


def _load(session: Session, entry_id: int, kind: EntryKind) -> Challenge | None:
    return session.scalar(
        select(Challenge)
        .where(Challenge.id == entry_id, Challenge.kind == kind.value)
        .options(
            selectinload(Challenge.challenger),
            selectinload(Challenge.opponent),
            selectinload(Challenge.votes),
        )
        .execution_options(populate_existing=True)
    )


# ---------------------------------------------------------------------------
# Create / match
# ---------------------------------------------------------------------------
def _try_match(
    session: Session,
    cfg: VerseConfig,
    *,
    kind: EntryKind,
    category: str,
    user_id: int,
    submission: str,
    now: datetime,
) -> int | None:
    """Pair *user_id* with the oldest eligible pending entry.

    Returns the matched entry id, or ``None`` when nothing could be claimed.
    Each candidate is claimed inside a SAVEPOINT; losing the race for it
    (rowcount 0) or finding its challenger can no longer pay rolls back just
    that attempt and moves on to the next candidate.
    """
    window_start = now - timedelta(hours=cfg.match_window_hours)
    can_pay = select(User.id).where(User.verse_points >= cfg.entry_fee)
    candidates = session.scalars(
        select(Challenge.id)
        .where(
            Challenge.kind == kind.value,
            Challenge.category == category,
            Challenge.status == EntryStatus.PENDING.value,
            Challenge.opponent_id.is_(None),
            Challenge.challenger_id != user_id,
            Challenge.created_at >= window_start,
            Challenge.challenger_id.in_(can_pay),
        )
        .order_by(Challenge.created_at.asc(), Challenge.id.asc())
    ).all()

    new_status = EntryStatus.CLOSED if submission else EntryStatus.OPEN
    for candidate_id in candidates:
        savepoint = session.begin_nested()
        claimed = session.execute(
            update(Challenge)
            .where(
                Challenge.id == candidate_id,
                Challenge.status == EntryStatus.PENDING.value,
                Challenge.opponent_id.is_(None),
            )
            .values(
                opponent_id=user_id,
                opponent_media=submission,
                status=new_status.value,
                matched_at=now,
                updated_at=now,
            )
        ).rowcount
        if claimed != 1:
            savepoint.rollback()
            continue

        challenger_id = session.scalar(
            select(Challenge.challenger_id).where(Challenge.id == candidate_id)
        )
        if not _charge(session, challenger_id, cfg.entry_fee):
            savepoint.rollback()
            logger.info(
                "Skipped %s %d: challenger %d can no longer pay the fee",
                kind, candidate_id, challenger_id,
            )
            continue

        savepoint.commit()
        return candidate_id
    return None


def create_entry(
    engine: Engine,
    cfg: VerseConfig,
    *,
    kind: str,
    user_id: int,
    category: str | None,
    submission: str | None = None,
    now: datetime | None = None,
) -> CreateResult:
    """Join the oldest waiting entry in *category* or open a new one.

    Preconditions (checked with the caller's row locked, so one user's
    concurrent requests queue up behind each other):

    * balance ≥ entry fee
    * fewer than ``daily_entry_limit`` entries of this kind opened since local midnight
      (joining another user's entry does not count)

    ``attempts_left`` is the remaining daily allowance *after* this call.
    """
    entry_kind = _kind(kind)
    category = normalize_category(category)
    submission = submission or ""
    now = now or utcnow()

    with get_session(engine) as session:
        user = session.scalar(
            select(User).where(User.id == user_id).with_for_update()
        )
        if user is None:
            raise NotFoundError("User not found.")
        if user.verse_points < cfg.entry_fee:
            raise ServiceError("Not enough versePoints.")

        since = start_of_local_day(cfg, now)
        used = _entries_created(session, user_id, entry_kind, since)
        if used >= cfg.daily_entry_limit:
            raise ServiceError(f"{cfg.daily_entry_limit} {entry_kind}s per day max.")

        if not _charge(session, user_id, cfg.entry_fee):
            raise ServiceError("Not enough versePoints.")

        entry_id = _try_match(
            session,
            cfg,
            kind=entry_kind,
            category=category,
            user_id=user_id,
            submission=submission,
            now=now,
        )
        matched = entry_id is not None
        if not matched:
            entry = Challenge(
                kind=entry_kind.value,
                category=category,
                challenger_id=user_id,
                challenger_media=submission,
                status=EntryStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(entry)
            session.flush()
            entry_id = entry.id
            logger.info(
                "User %d opened %s %d in %r", user_id, entry_kind, entry_id, category
            )
        else:
            logger.info(
                "User %d matched %s %d in %r", user_id, entry_kind, entry_id, category
            )

        created_today = used if matched else used + 1
        attempts_left = max(0, cfg.daily_entry_limit - created_today)
        loaded = _load(session, entry_id, entry_kind)
        return CreateResult(
            entry=challenge_dict(loaded, viewer_id=user_id),
            attempts_left=attempts_left,
            matched=matched,
        )


# ---------------------------------------------------------------------------
# Opponent submission
# ---------------------------------------------------------------------------
def submit_opponent_media(
    engine: Engine,
    *,
    kind: str,
    entry_id: int,
    user_id: int,
    media_url: str | None,
) -> dict:
    """Attach the recorded opponent's submission and open voting."""
    entry_kind = _kind(kind)
    if not media_url:
        raise ServiceError("No file uploaded.")

    with get_session(engine) as session:
        updated = session.execute(
            update(Challenge)
            .where(
                Challenge.id == entry_id,
                Challenge.kind == entry_kind.value,
                Challenge.opponent_id == user_id,
                Challenge.status.in_(
                    [EntryStatus.PENDING.value, EntryStatus.OPEN.value]
                ),
            )
            .values(
                opponent_media=media_url,
                status=EntryStatus.CLOSED.value,
                updated_at=utcnow(),
            )
        ).rowcount

        if updated != 1:
            if _load(session, entry_id, entry_kind) is None:
                raise NotFoundError(f"{entry_kind.value.capitalize()} not found.")
            raise ForbiddenError("Not authorized or already submitted.")

        logger.info("Opponent %d submitted to %s %d", user_id, entry_kind, entry_id)
        return challenge_dict(_load(session, entry_id, entry_kind), viewer_id=user_id)


# ---------------------------------------------------------------------------
# Voting
# ---------------------------------------------------------------------------
def _award_vote_point(session: Session, cfg: VerseConfig, user_id: int, today: date) -> bool:
    """Grant the per-vote reward unless today's cap is reached.

    The daily counter resets when ``last_vote_date`` is before *today*;
    both the reset and the cap check happen in the same UPDATE.
    """
    is_new_day = or_(User.last_vote_date.is_(None), User.last_vote_date < today)
    result = session.execute(
        update(User)
        .where(
            User.id == user_id,
            or_(is_new_day, User.vote_points_earned_today < cfg.daily_vote_cap),
        )
        .values(
            verse_points=User.verse_points + cfg.vote_reward,
            vote_points_earned_today=case(
                (is_new_day, 1),
                else_=User.vote_points_earned_today + 1,
            ),
            last_vote_date=today,
        )
    )
    return result.rowcount == 1


def cast_vote(
    engine: Engine,
    cfg: VerseConfig,
    *,
    kind: str,
    entry_id: int,
    voter_id: int,
    option: str | None,
    now: datetime | None = None,
) -> dict:
    """Record one vote for *option* and pay the voter's reward.

    The vote row is only written when the entry is closed, not finalized,
    and the voter is neither the challenger nor the opponent — two separate
    conditions, each checked by the database at insert time.
    """
    entry_kind = _kind(kind)
    side = VOTE_ALIASES.get((option or "").strip().lower())
    if side is None:
        raise ServiceError("Invalid vote option.")

    with get_session(engine) as session:
        entry = _load(session, entry_id, entry_kind)
        if entry is None:
            raise NotFoundError(f"{entry_kind.value.capitalize()} not found.")

        eligible = exists().where(
            Challenge.id == entry_id,
            Challenge.kind == entry_kind.value,
            Challenge.status == EntryStatus.CLOSED.value,
            Challenge.finalized.is_(False),
            Challenge.challenger_id != voter_id,
            or_(Challenge.opponent_id.is_(None), Challenge.opponent_id != voter_id),
        )
        stmt = insert(ChallengeVote.__table__).from_select(
            ["challenge_id", "voter_id", "side", "created_at"],
            select(
                literal(entry_id),
                literal(voter_id),
                literal(side.value),
                literal(now or utcnow(), ChallengeVote.created_at.type),
            ).where(eligible),
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                inserted = session.execute(stmt).rowcount
        except IntegrityError:
            raise ServiceError("Already voted.") from None

        if inserted != 1:
            if voter_id in (entry.challenger_id, entry.opponent_id):
                raise ServiceError(f"Cannot vote on your own {entry_kind.value}.")
            raise ServiceError("Voting is not open.")

        awarded = _award_vote_point(session, cfg, voter_id, local_today(cfg, now))
        logger.debug(
            "User %d voted %s on %s %d (reward=%s)",
            voter_id, side, entry_kind, entry_id, awarded,
        )
        data = challenge_dict(_load(session, entry_id, entry_kind), viewer_id=voter_id)
        data["pointsAwarded"] = cfg.vote_reward if awarded else 0
        return data


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------
def finalize_entry(
    engine: Engine,
    cfg: VerseConfig,
    *,
    kind: str,
    entry_id: int,
    viewer_id: int | None = None,
) -> dict:
    """Close out a voted entry exactly once and pay the winner.

    Ties pay nobody.  A second call is rejected by the latch update, never
    paid twice.
    """
    entry_kind = _kind(kind)

    with get_session(engine) as session:
        latched = session.execute(
            update(Challenge)
            .where(
                Challenge.id == entry_id,
                Challenge.kind == entry_kind.value,
                Challenge.status == EntryStatus.CLOSED.value,
                Challenge.finalized.is_(False),
            )
            .values(finalized=True, updated_at=utcnow())
        ).rowcount

        if latched != 1:
            entry = _load(session, entry_id, entry_kind)
            if entry is None:
                raise NotFoundError(f"{entry_kind.value.capitalize()} not found.")
            if entry.finalized:
                raise ServiceError("Already finalized.")
            raise ServiceError("Still open.")

        tally = dict(
            session.execute(
                select(ChallengeVote.side, func.count())
                .where(ChallengeVote.challenge_id == entry_id)
                .group_by(ChallengeVote.side)
            ).all()
        )
        for_challenger = tally.get(VoteSide.CHALLENGER.value, 0)
        for_opponent = tally.get(VoteSide.OPPONENT.value, 0)

        entry = _load(session, entry_id, entry_kind)
        winner_id: int | None = None
        if for_challenger > for_opponent:
            winner_id = entry.challenger_id
        elif for_opponent > for_challenger:
            winner_id = entry.opponent_id

        if winner_id is not None:
            _credit(session, winner_id, cfg.winner_bonus(entry_kind.value))
            session.execute(
                update(Challenge)
                .where(Challenge.id == entry_id)
                .values(winner_id=winner_id)
            )

        logger.info(
            "Finalized %s %d: %d-%d, winner=%s",
            entry_kind, entry_id, for_challenger, for_opponent, winner_id,
        )
        return challenge_dict(_load(session, entry_id, entry_kind), viewer_id=viewer_id)


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------
def cancel_entry(
    engine: Engine,
    cfg: VerseConfig,
    *,
    kind: str,
    user_id: int,
    entry_id: int | None = None,
) -> int:
    """Delete the caller's still-unmatched entry and refund the fee.

    Without *entry_id* the caller's oldest pending entry of *kind* is
    cancelled.  Returns the id of the cancelled entry.
    """
    entry_kind = _kind(kind)

    with get_session(engine) as session:
        if entry_id is None:
            entry_id = session.scalar(
                select(Challenge.id)
                .where(
                    Challenge.kind == entry_kind.value,
                    Challenge.challenger_id == user_id,
                    Challenge.status == EntryStatus.PENDING.value,
                )
                .order_by(Challenge.created_at.asc(), Challenge.id.asc())
                .limit(1)
            )
        deleted = 0
        if entry_id is not None:
            deleted = session.execute(
                delete(Challenge).where(
                    Challenge.id == entry_id,
                    Challenge.kind == entry_kind.value,
                    Challenge.challenger_id == user_id,
                    Challenge.status == EntryStatus.PENDING.value,
                    Challenge.opponent_id.is_(None),
                )
            ).rowcount
        if deleted != 1:
            raise NotFoundError(f"No pending {entry_kind.value} to cancel.")

        _credit(session, user_id, cfg.entry_fee)
        logger.info("User %d cancelled %s %d (refunded)", user_id, entry_kind, entry_id)
        return entry_id


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def list_entries(
    engine: Engine,
    cfg: VerseConfig,
    *,
    kind: str,
    viewer_id: int,
    now: datetime | None = None,
) -> dict[str, list[dict]]:
    """``active`` (matched, inside the match window), ``pending`` (waiting
    for an opponent) and ``past`` (everything the viewer took part in)."""
    entry_kind = _kind(kind)
    window_start = (now or utcnow()) - timedelta(hours=cfg.match_window_hours)
    base = (
        select(Challenge)
        .where(Challenge.kind == entry_kind.value)
        .options(
            selectinload(Challenge.challenger),
            selectinload(Challenge.opponent),
            selectinload(Challenge.votes),
        )
        .order_by(Challenge.created_at.desc(), Challenge.id.desc())
    )

    with get_session(engine) as session:
        active = session.scalars(
            base.where(
                Challenge.status.in_([EntryStatus.OPEN.value, EntryStatus.CLOSED.value]),
                Challenge.created_at >= window_start,
            )
        ).all()
        pending = session.scalars(
            base.where(Challenge.status == EntryStatus.PENDING.value)
        ).all()
        past = session.scalars(
            base.where(
                or_(
                    Challenge.challenger_id == viewer_id,
                    Challenge.opponent_id == viewer_id,
                )
            )
        ).all()
        return {
            "active": [challenge_dict(c, viewer_id=viewer_id) for c in active],
            "pending": [challenge_dict(c, viewer_id=viewer_id) for c in pending],
            "past": [challenge_dict(c, viewer_id=viewer_id) for c in past],
        }


def get_entry(engine: Engine, *, kind: str, entry_id: int, viewer_id: int) -> dict:
    entry_kind = _kind(kind)
    with get_session(engine) as session:
        entry = _load(session, entry_id, entry_kind)
        if entry is None:
            raise NotFoundError(f"{entry_kind.value.capitalize()} not found.")
        return challenge_dict(entry, viewer_id=viewer_id)

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

from dapaint.constants import DisplayConstants

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_user_id() -> str:
    return str(uuid.uuid4())


class MatchStatus(Enum):
    """Status of a match from creation to completion"""
    SCHEDULED = "scheduled"              # Created by host, open or seated
    PENDING_BALANCE = "pending_balance"  # Waiting on stakes to clear
    LIVE = "live"                        # Underway
    IN_PROGRESS = "in_progress"          # Reserved, not used by the lifecycle rules
    COMPLETED = "completed"              # Terminal

ACTIVE_MATCH_STATUSES = (MatchStatus.SCHEDULED, MatchStatus.PENDING_BALANCE, MatchStatus.LIVE)

class MatchType(Enum):
    """Shape of a match"""
    PAIRWISE = "1v1"  # Host against one foe
    TEAM = "team"     # Roster split across a host side and a foe side

class Side(Enum):
    """One of the two parties of a match"""
    HOST = "host"
    FOE = "foe"

    @property
    def opposite(self) -> 'Side':
        return Side.FOE if self is Side.HOST else Side.HOST


@dataclass(frozen=True)
class PairwiseKind:
    foe_id: Optional[str]

@dataclass(frozen=True)
class TeamKind:
    participants: Tuple['MatchParticipant', ...]

    def members(self, side: Side) -> List['MatchParticipant']:
        return [p for p in self.participants if p.team == side]

    def counts(self) -> Dict[Side, int]:
        return {side: len(self.members(side)) for side in Side}

MatchKind = Union[PairwiseKind, TeamKind]


class User(Base):
    """Subset of the user profile that the match engine reads and writes."""
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=_new_user_id)
    username = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(100))
    postal_code = Column(String(20), nullable=True)

    # Win-streak progression
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)

    # Metadata
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_active = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        CheckConstraint('current_streak >= 0', name='non_negative_streak_check'),
    )

    @property
    def name(self) -> str:
        return self.display_name or self.username

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', streak={self.current_streak})>"

class Match(Base):
    """
    A single scheduled challenge ("DaPaint") between a host and either one foe
    (pairwise) or a roster split across two sides (team).

    required_score is stamped from the host's streak at creation and never
    changes afterwards; joiners must hold exactly that streak.
    """
    __tablename__ = 'matches'

    id = Column(Integer, primary_key=True)

    # Parties
    host_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    host_display_name = Column(String(100), nullable=False)
    foe_id = Column(String(36), ForeignKey('users.id'), nullable=True, index=True)  # Pairwise only
    foe_display_name = Column(String(100), nullable=True)

    # Challenge description
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    how_winner_is_determined = Column(Text, nullable=False)
    rules = Column(Text, nullable=True)

    # Location (feed visibility only)
    location = Column(String(200), nullable=False)
    city = Column(String(100), nullable=False)
    postal_code = Column(String(20), nullable=False, index=True)

    # Shape and stakes
    match_type = Column(SQLEnum(MatchType), nullable=False)
    max_participants = Column(Integer, nullable=False, default=2)
    ticket_price_cents = Column(Integer, nullable=False, default=0)
    required_score = Column(Integer, nullable=False)

    # Scheduling and state
    starts_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(SQLEnum(MatchStatus), nullable=False, default=MatchStatus.SCHEDULED, index=True)

    # Outcome claims: which side each party believes won
    host_claim = Column(SQLEnum(Side), nullable=True)
    foe_claim = Column(SQLEnum(Side), nullable=True)
    host_proof_url = Column(String(500), nullable=True)
    foe_proof_url = Column(String(500), nullable=True)
    host_submitted_at = Column(DateTime(timezone=True), nullable=True)
    foe_submitted_at = Column(DateTime(timezone=True), nullable=True)
    winning_side = Column(SQLEnum(Side), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Metadata
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    host = relationship("User", foreign_keys=[host_id])
    foe = relationship("User", foreign_keys=[foe_id])
    participants = relationship("MatchParticipant", back_populates="match", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('required_score >= 0', name='non_negative_required_score_check'),
        CheckConstraint('max_participants >= 2', name='min_participants_check'),
        Index('ix_matches_feed', 'status', 'required_score', 'created_at'),
    )

    @property
    def is_active(self) -> bool:
        """Check if match still counts against the one-active-match rule"""
        return self.status in ACTIVE_MATCH_STATUSES

    @property
    def is_team(self) -> bool:
        return self.match_type == MatchType.TEAM

    @property
    def kind(self) -> MatchKind:
        """Shape-specific membership; only the fields meaningful for this shape."""
        if self.is_team:
            return TeamKind(participants=tuple(self.participants))
        return PairwiseKind(foe_id=self.foe_id)

    @property
    def has_opponent(self) -> bool:
        """Foe present (pairwise) or at least one member on each side (team)"""
        kind = self.kind
        if isinstance(kind, PairwiseKind):
            return kind.foe_id is not None
        counts = kind.counts()
        return counts[Side.HOST] > 0 and counts[Side.FOE] > 0

    def side_of(self, user_id: str) -> Optional[Side]:
        """Which side the user plays on, or None if not a party"""
        if self.host_id == user_id:
            return Side.HOST
        kind = self.kind
        if isinstance(kind, PairwiseKind):
            return Side.FOE if kind.foe_id == user_id else None
        for participant in kind.participants:
            if participant.user_id == user_id:
                return participant.team
        return None

    def user_ids_on(self, side: Side) -> List[str]:
        """User ids currently playing on one side"""
        kind = self.kind
        if isinstance(kind, PairwiseKind):
            if side == Side.HOST:
                return [self.host_id]
            return [kind.foe_id] if kind.foe_id else []
        return [p.user_id for p in kind.members(side)]

    def display_name_for(self, side: Side) -> str:
        if self.is_team:
            return DisplayConstants.HOST_TEAM_NAME if side == Side.HOST else DisplayConstants.FOE_TEAM_NAME
        if side == Side.HOST:
            return self.host_display_name or DisplayConstants.DEFAULT_HOST_NAME
        return self.foe_display_name or DisplayConstants.DEFAULT_FOE_NAME

    def __repr__(self):
        return f"<Match(id={self.id}, type={self.match_type.value}, status={self.status.value}, host={self.host_id})>"

class MatchParticipant(Base):
    """
    Team-mode roster row. Created on join, deleted on departure; only the
    team assignment and the submitted-result fields ever change.
    """
    __tablename__ = 'match_participants'

    id = Column(Integer, primary_key=True)

    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    team = Column(SQLEnum(Side), nullable=False)
    display_name = Column(String(100), nullable=True)

    # Self-reported outcome
    result_submitted = Column(Boolean, nullable=False, default=False)
    submitted_winner_side = Column(SQLEnum(Side), nullable=True)
    proof_url = Column(String(500), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)

    # Metadata
    joined_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint('match_id', 'user_id', name='unique_user_per_match'),
    )

    # Relationships
    match = relationship("Match", back_populates="participants")
    user = relationship("User")

    def __repr__(self):
        return f"<MatchParticipant(match_id={self.match_id}, user_id={self.user_id}, team={self.team.value})>"

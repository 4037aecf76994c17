"""Pure transition rules for the asynchronous side of a call session.

Browser-style callbacks (local candidate gathered, remote candidate seen in
the store, remote track arrived, answer observed, connection state changed)
are turned into typed events. :func:`step` folds one event into a
:class:`ProtocolState` and returns the effects the session must perform.
Nothing here touches the network, the store or media.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
import enum
from typing import Any, Union

from ..schemas.signaling import CandidateLog, IceCandidate, SessionDescription


class SessionRole(str, enum.Enum):
    CALLER = "caller"
    CALLEE = "callee"

    @property
    def local_log(self) -> CandidateLog:
        return CandidateLog.CALLER if self is SessionRole.CALLER else CandidateLog.CALLEE

    @property
    def remote_log(self) -> CandidateLog:
        return CandidateLog.CALLEE if self is SessionRole.CALLER else CandidateLog.CALLER


class SessionState(str, enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting_answer"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.OFFERING, SessionState.ANSWERING}),
    SessionState.OFFERING: frozenset({SessionState.AWAITING_ANSWER}),
    SessionState.AWAITING_ANSWER: frozenset({SessionState.CONNECTED}),
    SessionState.ANSWERING: frozenset({SessionState.CONNECTED}),
    SessionState.CONNECTED: frozenset(),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    """Forward moves follow the lifecycle; any live state may close or fail."""

    if target.terminal:
        return not current.terminal
    return target in _TRANSITIONS[current]


# Events


@dataclass(frozen=True)
class LocalCandidateGathered:
    candidate: IceCandidate | None


@dataclass(frozen=True)
class SignalingChannelOpened:
    room_id: str


@dataclass(frozen=True)
class RemoteCandidateReceived:
    record_id: str
    candidate: IceCandidate


@dataclass(frozen=True)
class AnswerObserved:
    answer: SessionDescription


@dataclass(frozen=True)
class RemoteDescriptionApplied:
    pass


@dataclass(frozen=True)
class RemoteTrackArrived:
    track_id: str
    track: Any = field(compare=False, repr=False)


@dataclass(frozen=True)
class PeerStateChanged:
    state: str


Event = Union[
    LocalCandidateGathered,
    SignalingChannelOpened,
    RemoteCandidateReceived,
    AnswerObserved,
    RemoteDescriptionApplied,
    RemoteTrackArrived,
    PeerStateChanged,
]


# Effects


@dataclass(frozen=True)
class PublishCandidate:
    room_id: str
    log: CandidateLog
    candidate: IceCandidate


@dataclass(frozen=True)
class ApplyCandidate:
    candidate: IceCandidate


@dataclass(frozen=True)
class ApplyAnswer:
    answer: SessionDescription


@dataclass(frozen=True)
class AttachRemoteTrack:
    track: Any = field(compare=False)


@dataclass(frozen=True)
class ReportPeerState:
    state: str


@dataclass(frozen=True)
class FailSession:
    reason: str


Effect = Union[PublishCandidate, ApplyCandidate, ApplyAnswer, AttachRemoteTrack, ReportPeerState, FailSession]


@dataclass(frozen=True)
class ProtocolState:
    """Bookkeeping that gates candidate flow in both directions.

    ``outbox`` holds local candidates gathered before the room's signaling
    channel is open; ``pending`` holds remote candidates received before the
    remote description is applied. Both drain in arrival order.
    """

    role: SessionRole
    room_id: str | None = None
    remote_ready: bool = False
    answer_seen: bool = False
    outbox: tuple[IceCandidate, ...] = ()
    pending: tuple[IceCandidate, ...] = ()
    seen_candidates: frozenset[str] = frozenset()
    track_ids: frozenset[str] = frozenset()


def step(state: ProtocolState, event: Event) -> tuple[ProtocolState, list[Effect]]:
    """Apply one event; returns the next state and the effects to run, in order."""

    if isinstance(event, LocalCandidateGathered):
        if event.candidate is None:
            return state, []
        if state.room_id is None:
            return replace(state, outbox=state.outbox + (event.candidate,)), []
        return state, [PublishCandidate(state.room_id, state.role.local_log, event.candidate)]

    if isinstance(event, SignalingChannelOpened):
        if state.room_id is not None:
            return state, []
        effects: list[Effect] = [
            PublishCandidate(event.room_id, state.role.local_log, candidate) for candidate in state.outbox
        ]
        return replace(state, room_id=event.room_id, outbox=()), effects

    if isinstance(event, RemoteCandidateReceived):
        if event.record_id in state.seen_candidates:
            return state, []
        seen = state.seen_candidates | {event.record_id}
        if not state.remote_ready:
            return replace(state, seen_candidates=seen, pending=state.pending + (event.candidate,)), []
        return replace(state, seen_candidates=seen), [ApplyCandidate(event.candidate)]

    if isinstance(event, AnswerObserved):
        if state.role is not SessionRole.CALLER or state.answer_seen or state.remote_ready:
            return state, []
        return replace(state, answer_seen=True), [ApplyAnswer(event.answer)]

    if isinstance(event, RemoteDescriptionApplied):
        if state.remote_ready:
            return state, []
        flushed: list[Effect] = [ApplyCandidate(candidate) for candidate in state.pending]
        return replace(state, remote_ready=True, pending=()), flushed

    if isinstance(event, RemoteTrackArrived):
        if event.track_id in state.track_ids:
            return state, []
        return replace(state, track_ids=state.track_ids | {event.track_id}), [AttachRemoteTrack(event.track)]

    if isinstance(event, PeerStateChanged):
        effects = [ReportPeerState(event.state)]
        if event.state == "failed":
            effects.append(FailSession("Peer connection failed"))
        return state, effects

    raise TypeError(f"Unknown session event: {event!r}")

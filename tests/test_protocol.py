from __future__ import annotations

import pytest

from callroom.schemas.signaling import CandidateLog, IceCandidate, SessionDescription
from callroom.services.protocol import (
    AnswerObserved,
    ApplyAnswer,
    ApplyCandidate,
    AttachRemoteTrack,
    FailSession,
    LocalCandidateGathered,
    PeerStateChanged,
    ProtocolState,
    PublishCandidate,
    RemoteCandidateReceived,
    RemoteDescriptionApplied,
    RemoteTrackArrived,
    ReportPeerState,
    SessionRole,
    SessionState,
    SignalingChannelOpened,
    can_transition,
    step,
)

ANSWER = SessionDescription(type="answer", sdp="v=0 answer")


def _candidate(n: int) -> IceCandidate:
    return IceCandidate(candidate=f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", sdpMid="0", sdpMLineIndex=0)


def test_role_candidate_logs() -> None:
    assert SessionRole.CALLER.local_log is CandidateLog.CALLER
    assert SessionRole.CALLER.remote_log is CandidateLog.CALLEE
    assert SessionRole.CALLEE.local_log is CandidateLog.CALLEE
    assert SessionRole.CALLEE.remote_log is CandidateLog.CALLER


def test_lifecycle_transitions() -> None:
    assert can_transition(SessionState.IDLE, SessionState.OFFERING)
    assert can_transition(SessionState.OFFERING, SessionState.AWAITING_ANSWER)
    assert can_transition(SessionState.AWAITING_ANSWER, SessionState.CONNECTED)
    assert can_transition(SessionState.ANSWERING, SessionState.CONNECTED)
    assert can_transition(SessionState.CONNECTED, SessionState.CLOSED)
    assert can_transition(SessionState.OFFERING, SessionState.FAILED)

    assert not can_transition(SessionState.IDLE, SessionState.CONNECTED)
    assert not can_transition(SessionState.CONNECTED, SessionState.OFFERING)
    assert not can_transition(SessionState.CLOSED, SessionState.FAILED)
    assert not can_transition(SessionState.FAILED, SessionState.CLOSED)


def test_local_candidates_wait_for_signaling_channel() -> None:
    state = ProtocolState(role=SessionRole.CALLER)

    state, effects = step(state, LocalCandidateGathered(_candidate(1)))
    assert effects == []
    state, effects = step(state, LocalCandidateGathered(_candidate(2)))
    assert effects == []
    assert state.outbox == (_candidate(1), _candidate(2))

    state, effects = step(state, SignalingChannelOpened("r1"))
    assert effects == [
        PublishCandidate("r1", CandidateLog.CALLER, _candidate(1)),
        PublishCandidate("r1", CandidateLog.CALLER, _candidate(2)),
    ]
    assert state.outbox == ()

    state, effects = step(state, LocalCandidateGathered(_candidate(3)))
    assert effects == [PublishCandidate("r1", CandidateLog.CALLER, _candidate(3))]


def test_end_of_candidates_is_not_published() -> None:
    state = ProtocolState(role=SessionRole.CALLEE, room_id="r1")

    after, effects = step(state, LocalCandidateGathered(None))

    assert effects == []
    assert after == state


def test_remote_candidates_queue_until_description_applied() -> None:
    state = ProtocolState(role=SessionRole.CALLER, room_id="r1")

    state, effects = step(state, RemoteCandidateReceived("a", _candidate(1)))
    assert effects == []
    state, effects = step(state, RemoteCandidateReceived("b", _candidate(2)))
    assert effects == []

    state, effects = step(state, RemoteDescriptionApplied())
    assert effects == [ApplyCandidate(_candidate(1)), ApplyCandidate(_candidate(2))]
    assert state.pending == ()
    assert state.remote_ready

    state, effects = step(state, RemoteCandidateReceived("c", _candidate(3)))
    assert effects == [ApplyCandidate(_candidate(3))]


def test_remote_candidate_delivered_twice_is_applied_once() -> None:
    state = ProtocolState(role=SessionRole.CALLEE, room_id="r1", remote_ready=True)

    state, first = step(state, RemoteCandidateReceived("a", _candidate(1)))
    state, second = step(state, RemoteCandidateReceived("a", _candidate(1)))

    assert first == [ApplyCandidate(_candidate(1))]
    assert second == []


def test_answer_is_applied_once_by_caller_only() -> None:
    caller = ProtocolState(role=SessionRole.CALLER, room_id="r1")
    caller, effects = step(caller, AnswerObserved(ANSWER))
    assert effects == [ApplyAnswer(ANSWER)]
    caller, effects = step(caller, AnswerObserved(ANSWER))
    assert effects == []

    callee = ProtocolState(role=SessionRole.CALLEE, room_id="r1")
    _, effects = step(callee, AnswerObserved(ANSWER))
    assert effects == []


def test_remote_description_applied_twice_flushes_once() -> None:
    state = ProtocolState(role=SessionRole.CALLER, pending=(_candidate(1),))

    state, effects = step(state, RemoteDescriptionApplied())
    assert effects == [ApplyCandidate(_candidate(1))]
    _, effects = step(state, RemoteDescriptionApplied())
    assert effects == []


def test_remote_tracks_are_attached_once_per_track_id() -> None:
    track = object()
    state = ProtocolState(role=SessionRole.CALLEE)

    state, effects = step(state, RemoteTrackArrived("t1", track))
    assert len(effects) == 1
    assert isinstance(effects[0], AttachRemoteTrack)
    assert effects[0].track is track
    _, effects = step(state, RemoteTrackArrived("t1", track))
    assert effects == []


@pytest.mark.parametrize("peer_state", ["connecting", "connected", "disconnected", "closed"])
def test_peer_state_is_reported(peer_state: str) -> None:
    _, effects = step(ProtocolState(role=SessionRole.CALLER), PeerStateChanged(peer_state))
    assert effects == [ReportPeerState(peer_state)]


def test_failed_peer_state_fails_the_session() -> None:
    _, effects = step(ProtocolState(role=SessionRole.CALLER), PeerStateChanged("failed"))
    assert effects == [ReportPeerState("failed"), FailSession("Peer connection failed")]

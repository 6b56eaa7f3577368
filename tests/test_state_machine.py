"""Tests for the NegotiationStateMachine transition table."""

import asyncio

import pytest

from duel_rtc.exceptions import InvalidRoom, NegotiationFailed
from duel_rtc.negotiation.state_machine import NegotiationStateMachine
from duel_rtc.negotiation.states import ConnectionState, Role
from duel_rtc.protocol import (
    Answer,
    IceCandidate,
    Offer,
    PeerIdentity,
    Ready,
    candidate_from_dict,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


OFFER = {"sdp": "v=0 remote offer", "type": "offer"}
ANSWER = {"sdp": "v=0 remote answer", "type": "answer"}


def make_machine(channel, pc, config, client_id="b2", name="Kaiba", room="room-1"):
    return NegotiationStateMachine(channel, room, PeerIdentity(client_id, name), pc, config)


async def started(channel, pc, config, client_id="b2", name="Kaiba"):
    machine = make_machine(channel, pc, config, client_id, name)
    await machine.start()
    return machine


def ready_from(client_id, name="Remote"):
    return Ready(PeerIdentity(client_id, name))


async def wait_for_call(pc, name):
    for _ in range(50):
        if name in pc.calls:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{name} was never called")


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStart:
    @pytest.mark.asyncio
    async def test_start_announces_ready(self, channel, make_pc, config):
        """Starting subscribes, moves to AWAITING_REMOTE and sends Ready."""
        machine = await started(channel, make_pc(), config, client_id="a1")

        assert machine.state is ConnectionState.AWAITING_REMOTE
        assert channel.opened == 1
        assert channel.sent == [ready_from("a1")]

    @pytest.mark.asyncio
    async def test_start_with_empty_room_raises(self, channel, make_pc, config):
        machine = make_machine(channel, make_pc(), config, room="")

        with pytest.raises(InvalidRoom):
            await machine.start()
        assert machine.state is ConnectionState.IDLE
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, channel, make_pc, config):
        machine = await started(channel, make_pc(), config)

        with pytest.raises(RuntimeError):
            await machine.start()


# ---------------------------------------------------------------------------
# Tie-break
# ---------------------------------------------------------------------------


class TestTieBreak:
    @pytest.mark.asyncio
    async def test_lower_id_becomes_offerer(self, channel, make_pc, config):
        pc = make_pc("a")
        machine = await started(channel, pc, config, client_id="a1", name="Yugi")

        await machine.dispatch(ready_from("b2"))

        assert machine.role is Role.OFFERER
        assert machine.state is ConnectionState.NEGOTIATING
        assert pc.calls == ["createOffer", "setLocalDescription"]
        offers = channel.sent_of(Offer)
        assert len(offers) == 1
        assert offers[0].description == {"sdp": "v=0 offer from a", "type": "offer"}
        assert offers[0].display_name == "Yugi"
        assert machine.local_description == offers[0].description

    @pytest.mark.asyncio
    async def test_higher_id_acknowledges_with_ready(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="b2")

        await machine.dispatch(ready_from("a1"))

        assert machine.role is Role.ANSWERER
        assert machine.state is ConnectionState.AWAITING_REMOTE
        assert pc.calls == []
        assert channel.sent == [ready_from("b2"), ready_from("b2")]

    @pytest.mark.asyncio
    async def test_ack_repeats_for_every_ready(self, channel, make_pc, config):
        """The ack is idempotent and repeatable, not single-shot."""
        machine = await started(channel, make_pc(), config, client_id="b2")

        await machine.dispatch(ready_from("a1"))
        await machine.dispatch(ready_from("a1"))

        assert len(channel.sent_of(Ready)) == 3
        assert channel.sent_of(Offer) == []

    @pytest.mark.asyncio
    async def test_duplicate_ready_after_offer_is_noop(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")

        await machine.dispatch(ready_from("b2"))
        await machine.dispatch(ready_from("b2"))

        assert pc.calls.count("createOffer") == 1
        assert len(channel.sent_of(Offer)) == 1

    @pytest.mark.asyncio
    async def test_own_ready_echo_ignored(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")

        await machine.dispatch(ready_from("a1"))

        assert machine.role is None
        assert pc.calls == []
        assert machine.remote_name is None

    @pytest.mark.asyncio
    async def test_ready_carries_remote_name(self, channel, make_pc, config):
        machine = await started(channel, make_pc(), config, client_id="b2")
        names = []
        machine.add_remote_name_listener(names.append)

        await machine.dispatch(ready_from("a1", name="Yugi"))

        assert machine.remote_name == "Yugi"
        assert names == ["Yugi"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "first,second",
        [("a1", "b2"), ("b2", "a1"), ("peer-10", "peer-9"), ("Z", "a"), ("0f3c", "0f3b")],
    )
    @pytest.mark.parametrize("reverse_delivery", [False, True])
    async def test_exactly_one_side_offers(
        self, make_pc, make_channel, config, first, second, reverse_delivery
    ):
        """For any two distinct ids exactly one peer offers, the lower-sorting one."""
        channels = {first: make_channel(), second: make_channel()}
        machines = {
            cid: await started(channels[cid], make_pc(cid), config, client_id=cid)
            for cid in (first, second)
        }

        order = [(first, second), (second, first)]
        if reverse_delivery:
            order.reverse()
        for receiver, sender in order:
            await machines[receiver].dispatch(ready_from(sender))

        offerers = [cid for cid in machines if channels[cid].sent_of(Offer)]
        assert offerers == [min(first, second)]


# ---------------------------------------------------------------------------
# Offer / Answer
# ---------------------------------------------------------------------------


class TestOfferHandling:
    @pytest.mark.asyncio
    async def test_answerer_applies_offer_and_answers(self, channel, make_pc, config):
        pc = make_pc("b")
        machine = await started(channel, pc, config, client_id="b2", name="Kaiba")

        await machine.dispatch(Offer(OFFER, "Yugi"))

        assert machine.remote_description == OFFER
        assert machine.state is ConnectionState.NEGOTIATING
        assert machine.role is Role.ANSWERER
        assert machine.remote_name == "Yugi"
        assert pc.calls == [
            "setRemoteDescription",
            "createAnswer",
            "setLocalDescription",
        ]
        answers = channel.sent_of(Answer)
        assert len(answers) == 1
        assert answers[0].description == {"sdp": "v=0 answer from b", "type": "answer"}
        assert answers[0].display_name == "Kaiba"

    @pytest.mark.asyncio
    async def test_duplicate_offer_ignored(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)
        await machine.dispatch(Offer(OFFER, "Yugi"))
        calls_before = list(pc.calls)

        await machine.dispatch(Offer({"sdp": "v=0 other", "type": "offer"}, "Yugi"))

        assert pc.calls == calls_before
        assert machine.remote_description == OFFER
        assert machine.state is ConnectionState.NEGOTIATING
        assert len(channel.sent_of(Answer)) == 1

    @pytest.mark.asyncio
    async def test_offer_while_offering_is_rejected(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")
        await machine.dispatch(ready_from("b2"))

        await machine.dispatch(Offer(OFFER, "Kaiba"))

        assert "setRemoteDescription" not in pc.calls
        assert machine.remote_description is None
        assert machine.state is ConnectionState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_recurring_description_failures_fail_connection(
        self, channel, make_pc, config
    ):
        config.max_description_failures = 2
        machine = await started(channel, make_pc(), config, client_id="a1")
        await machine.dispatch(ready_from("b2"))

        await machine.dispatch(Offer(OFFER))
        assert machine.state is ConnectionState.NEGOTIATING

        await machine.dispatch(Offer(OFFER))
        assert machine.state is ConnectionState.FAILED
        assert isinstance(machine.error, NegotiationFailed)

    @pytest.mark.asyncio
    async def test_unappliable_offer_is_logged_not_raised(self, channel, make_pc, config):
        pc = make_pc()

        async def reject(description):
            raise ValueError("bad sdp")

        pc.setRemoteDescription = reject
        machine = await started(channel, pc, config)

        await machine.dispatch(Offer(OFFER))

        assert machine.remote_description is None
        assert channel.sent_of(Answer) == []
        assert machine.state is ConnectionState.NEGOTIATING


class TestAnswerHandling:
    @pytest.mark.asyncio
    async def test_offerer_applies_answer(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")
        await machine.dispatch(ready_from("b2"))

        await machine.dispatch(Answer(ANSWER, "Kaiba"))

        assert machine.remote_description == ANSWER
        assert machine.remote_name == "Kaiba"
        assert pc.remoteDescription.type == "answer"

    @pytest.mark.asyncio
    async def test_duplicate_answer_ignored(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")
        await machine.dispatch(ready_from("b2"))
        await machine.dispatch(Answer(ANSWER))

        await machine.dispatch(Answer(ANSWER))

        assert pc.calls.count("setRemoteDescription") == 1
        assert machine.state is ConnectionState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_answer_without_offer_ignored(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="b2")

        await machine.dispatch(Answer(ANSWER))

        assert "setRemoteDescription" not in pc.calls
        assert machine.remote_description is None


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class TestCandidates:
    @pytest.mark.asyncio
    async def test_candidates_before_offer_are_queued_then_applied_in_order(
        self, channel, make_pc, config, candidate
    ):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="b2")

        for port in (5001, 5002, 5003):
            await machine.dispatch(IceCandidate(candidate(port)))
        assert machine.pending_candidates == 3
        assert pc.added_candidates == []

        await machine.dispatch(Offer(OFFER))

        assert [c.port for c in pc.added_candidates] == [5001, 5002, 5003]
        assert machine.pending_candidates == 0
        # Queue drained before the answer was created.
        assert pc.calls.index("createAnswer") > pc.calls.index("setRemoteDescription")

    @pytest.mark.asyncio
    async def test_failing_candidate_does_not_block_others(
        self, channel, make_pc, config, candidate
    ):
        pc = make_pc()
        pc.failing_ports = {5002}
        machine = await started(channel, pc, config, client_id="b2")
        for port in (5001, 5002, 5003):
            await machine.dispatch(IceCandidate(candidate(port)))

        await machine.dispatch(Offer(OFFER))

        assert [c.port for c in pc.added_candidates] == [5001, 5003]
        assert len(channel.sent_of(Answer)) == 1

    @pytest.mark.asyncio
    async def test_offerer_drains_queue_on_answer(self, channel, make_pc, config, candidate):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")
        await machine.dispatch(ready_from("b2"))
        await machine.dispatch(IceCandidate(candidate(7001)))
        await machine.dispatch(IceCandidate(candidate(7002)))
        assert pc.added_candidates == []

        await machine.dispatch(Answer(ANSWER))

        assert [c.port for c in pc.added_candidates] == [7001, 7002]

    @pytest.mark.asyncio
    async def test_candidate_after_remote_description_applied_directly(
        self, channel, make_pc, config, candidate
    ):
        pc = make_pc()
        machine = await started(channel, pc, config)
        await machine.dispatch(Offer(OFFER))

        await machine.dispatch(IceCandidate(candidate(5004)))

        assert [c.port for c in pc.added_candidates] == [5004]
        assert pc.added_candidates[0].sdpMid == "0"
        assert machine.pending_candidates == 0

    @pytest.mark.asyncio
    async def test_malformed_direct_candidate_is_swallowed(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)
        await machine.dispatch(Offer(OFFER))

        await machine.dispatch(IceCandidate({"candidate": "candidate:garbage"}))

        assert pc.added_candidates == []
        assert machine.state is ConnectionState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_end_of_candidates_marker_is_ignored(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)
        await machine.dispatch(Offer(OFFER))

        await machine.dispatch(IceCandidate({"candidate": "", "sdpMid": "0"}))

        assert pc.added_candidates == []


# ---------------------------------------------------------------------------
# Transport events
# ---------------------------------------------------------------------------


class TestTransportEvents:
    @pytest.mark.asyncio
    async def test_connected_event_moves_to_connected(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)
        await machine.dispatch(Offer(OFFER))
        states = []
        machine.add_state_listener(lambda state, error: states.append(state))

        await pc.set_connection_state("connected")

        assert machine.state is ConnectionState.CONNECTED
        assert states == [ConnectionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_failed_event_surfaces_negotiation_failed(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)
        errors = []
        machine.add_state_listener(lambda state, error: errors.append(error))

        await pc.set_connection_state("failed")

        assert machine.state is ConnectionState.FAILED
        assert isinstance(machine.error, NegotiationFailed)
        assert isinstance(errors[-1], NegotiationFailed)

    @pytest.mark.asyncio
    async def test_no_negotiation_after_failure(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)
        await pc.set_connection_state("failed")

        await machine.dispatch(Offer(OFFER))

        assert pc.calls == []
        assert machine.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_track_event_records_remote_track(
        self, channel, make_pc, make_track, config
    ):
        pc = make_pc()
        machine = await started(channel, pc, config)
        received = []
        machine.add_track_listener(received.append)
        track = make_track("video")

        await pc.emit("track", track)

        assert machine.remote_tracks == [track]
        assert received == [track]

    @pytest.mark.asyncio
    async def test_local_candidate_is_broadcast(self, channel, make_pc, config, candidate):
        pc = make_pc()
        await started(channel, pc, config)
        local = candidate_from_dict(candidate(6000, ip="10.0.0.5"))

        await pc.emit("icecandidate", local)

        sent = channel.sent_of(IceCandidate)
        assert len(sent) == 1
        assert sent[0].candidate["candidate"].startswith("candidate:")
        assert "10.0.0.5 6000" in sent[0].candidate["candidate"]
        assert sent[0].candidate["sdpMLineIndex"] == 0


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_terminal_and_idempotent(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config)

        await machine.close()
        await machine.close()

        assert machine.state is ConnectionState.CLOSED
        assert pc.closed
        assert channel.closed == 1
        assert not channel.subscribed

    @pytest.mark.asyncio
    async def test_envelopes_after_close_are_ignored(self, channel, make_pc, config):
        pc = make_pc()
        machine = await started(channel, pc, config, client_id="a1")
        await machine.close()

        await machine.dispatch(ready_from("b2"))
        await machine.dispatch(Offer(OFFER))
        await pc.set_connection_state("connected")

        assert pc.calls == []
        assert machine.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_clears_queued_candidates(self, channel, make_pc, config, candidate):
        machine = await started(channel, make_pc(), config)
        await machine.dispatch(IceCandidate(candidate(5001)))

        await machine.close()

        assert machine.pending_candidates == 0

    @pytest.mark.asyncio
    async def test_close_during_offer_creation_discards_result(
        self, channel, make_pc, config
    ):
        pc = make_pc()
        pc.offer_gate = asyncio.get_running_loop().create_future()
        machine = await started(channel, pc, config, client_id="a1")

        task = asyncio.create_task(machine.dispatch(ready_from("b2")))
        await wait_for_call(pc, "createOffer")
        await machine.close()
        pc.offer_gate.set_result(None)
        await task

        assert machine.state is ConnectionState.CLOSED
        assert "setLocalDescription" not in pc.calls
        assert machine.local_description is None
        assert channel.sent_of(Offer) == []

    @pytest.mark.asyncio
    async def test_close_during_answer_creation_discards_result(
        self, channel, make_pc, config
    ):
        pc = make_pc()
        pc.answer_gate = asyncio.get_running_loop().create_future()
        machine = await started(channel, pc, config)

        task = asyncio.create_task(machine.dispatch(Offer(OFFER)))
        await wait_for_call(pc, "createAnswer")
        await machine.close()
        pc.answer_gate.set_result(None)
        await task

        assert machine.state is ConnectionState.CLOSED
        assert pc.calls.count("setLocalDescription") == 0
        assert channel.sent_of(Answer) == []

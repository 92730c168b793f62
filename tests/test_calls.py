import unittest

from chatgate.calls import CallInProgress
from chatgate.conversations import InvalidRequest, direct_conv_id
from chatgate.ws_transport import dispatch_frame

from tests.core_util import Core, app_frames, of_type


class DirectCallTests(unittest.TestCase):
    def setUp(self):
        self.core = Core()
        self.alice = self.core.user("alice")
        self.bob = self.core.user("bob")
        self.conv = direct_conv_id(self.alice, self.bob)
        self.alice_frames = self.core.connect(self.alice)
        self.bob_frames = self.core.connect(self.bob)

    def test_start_answer_end(self):
        call = self.core.calls.start_call(self.conv, self.alice, "video")

        [incoming] = of_type(self.bob_frames, "incoming_call")
        self.assertEqual(
            incoming["body"],
            {"conv_id": self.conv, "call_id": call.call_id, "caller_id": self.alice, "call_type": "video"},
        )
        self.assertEqual(of_type(self.alice_frames, "incoming_call"), [])
        self.assertEqual(call.state, "ringing")

        self.core.calls.answer_call(self.conv, self.bob)
        [answered] = of_type(self.alice_frames, "call_answered")
        self.assertEqual(answered["body"]["answerer_id"], self.bob)
        self.assertEqual(of_type(self.bob_frames, "call_answered"), [])
        self.assertEqual(call.state, "active")
        self.assertEqual(call.participants, {self.alice, self.bob})

        self.core.calls.end_call(self.conv, self.bob)
        for frames in (self.alice_frames, self.bob_frames):
            [ended] = of_type(frames, "call_ended")
            self.assertEqual(ended["body"]["reason"], "hangup")
            self.assertEqual(ended["body"]["call_id"], call.call_id)
        self.assertIsNone(self.core.calls.active_call(self.conv))

    def test_second_start_is_rejected_while_ringing(self):
        self.core.calls.start_call(self.conv, self.alice)
        with self.assertRaises(CallInProgress):
            self.core.calls.start_call(self.conv, self.bob)

    def test_invalid_call_type_and_missing_conversation(self):
        with self.assertRaises(InvalidRequest):
            self.core.calls.start_call(self.conv, self.alice, "hologram")
        with self.assertRaises(InvalidRequest):
            self.core.calls.start_call(None, self.alice)

    def test_non_string_conversation_is_invalid_for_call_control(self):
        self.core.calls.start_call(self.conv, self.alice)

        for bad in ({"a": 1}, ["x"], None, ""):
            with self.assertRaises(InvalidRequest):
                self.core.calls.answer_call(bad, self.bob)
            with self.assertRaises(InvalidRequest):
                self.core.calls.end_call(bad, self.bob)
        self.assertIsNotNone(self.core.calls.active_call(self.conv))

    def test_malformed_call_frames_reply_with_error(self):
        for frame_type, conv_id in [("end_call", {"a": 1}), ("answer_call", ["x"])]:
            reply = dispatch_frame(
                self.core.router,
                self.core.calls,
                self.alice,
                {"v": 1, "t": frame_type, "id": frame_type, "body": {"conv_id": conv_id}},
            )
            self.assertEqual(reply["t"], "error")
            self.assertEqual(reply["id"], frame_type)
            self.assertEqual(reply["body"]["code"], "invalid_request")

    def test_outsider_cannot_ring_or_answer(self):
        mallory = self.core.user("mallory")

        self.assertIsNone(self.core.calls.start_call(self.conv, mallory))
        self.assertEqual(of_type(self.bob_frames, "incoming_call"), [])

        self.core.calls.start_call(self.conv, self.alice)
        self.assertIsNone(self.core.calls.answer_call(self.conv, mallory))
        self.assertIsNone(self.core.calls.answer_call(self.conv, self.alice))
        self.assertIsNone(self.core.calls.end_call(self.conv, mallory))
        self.assertIsNotNone(self.core.calls.active_call(self.conv))

    def test_blocked_callee_is_not_rung(self):
        self.core.router.block(self.bob, self.alice)

        call = self.core.calls.start_call(self.conv, self.alice)

        self.assertIsNotNone(call)
        self.assertEqual(of_type(self.bob_frames, "incoming_call"), [])

    def test_signal_is_relayed_opaquely(self):
        offer = {"type": "offer", "sdp": "v=0..."}

        self.assertTrue(self.core.calls.relay_signal(self.bob, offer, self.alice, conv_id=self.conv))
        [signal] = of_type(self.bob_frames, "signal")
        self.assertEqual(signal["body"], {"from": self.alice, "signal": offer, "conv_id": self.conv})

        self.assertFalse(self.core.calls.relay_signal("u_offline", offer, self.alice))
        with self.assertRaises(InvalidRequest):
            self.core.calls.relay_signal(None, offer, self.alice)
        with self.assertRaises(InvalidRequest):
            self.core.calls.relay_signal(self.bob, None, self.alice)

    def test_disconnect_ends_calls_for_remaining_party(self):
        self.core.calls.start_call(self.conv, self.alice)
        self.core.calls.answer_call(self.conv, self.bob)

        ended = self.core.calls.drop_user(self.alice)

        self.assertEqual(len(ended), 1)
        [notice] = of_type(self.bob_frames, "call_ended")
        self.assertEqual(notice["body"]["reason"], "disconnected")
        self.assertEqual(of_type(self.alice_frames, "call_ended"), [])
        self.assertEqual(self.core.calls.drop_user(self.alice), [])

    def test_unanswered_call_times_out(self):
        call = self.core.calls.start_call(self.conv, self.alice)

        self.core.clock.advance(10)
        self.assertEqual(self.core.calls.expire(), [])

        self.core.clock.advance(30)
        self.assertEqual(self.core.calls.expire(), [call])
        for frames in (self.alice_frames, self.bob_frames):
            self.assertEqual(of_type(frames, "call_ended")[0]["body"]["reason"], "timeout")
        self.assertIsNone(self.core.calls.active_call(self.conv))

    def test_answered_call_does_not_time_out(self):
        self.core.calls.start_call(self.conv, self.alice)
        self.core.calls.answer_call(self.conv, self.bob)

        self.core.clock.advance(120)

        self.assertEqual(self.core.calls.expire(), [])
        self.assertIsNotNone(self.core.calls.active_call(self.conv))


class GroupCallTests(unittest.TestCase):
    def setUp(self):
        self.core = Core()
        self.creator = self.core.user("creator")
        self.m1 = self.core.user("m1")
        self.m2 = self.core.user("m2")
        self.outsider = self.core.user("outsider")
        self.frames = {uid: self.core.connect(uid) for uid in (self.creator, self.m1, self.m2, self.outsider)}
        self.group = self.core.router.create_group(self.creator, "team", [self.m1, self.m2])

    def test_group_call_rings_and_answers_to_every_other_member(self):
        self.core.calls.start_call(self.group.conv_id, self.m1, "audio")

        for uid in (self.creator, self.m2):
            self.assertEqual(len(of_type(self.frames[uid], "incoming_call")), 1)
        self.assertEqual(of_type(self.frames[self.m1], "incoming_call"), [])
        self.assertEqual(of_type(self.frames[self.outsider], "incoming_call"), [])

        self.core.calls.answer_call(self.group.conv_id, self.m2)
        for uid in (self.creator, self.m1):
            self.assertEqual(len(of_type(self.frames[uid], "call_answered")), 1)
        self.assertEqual(of_type(self.frames[self.m2], "call_answered"), [])

        self.core.calls.end_call(self.group.conv_id, self.creator)
        for uid in (self.creator, self.m1, self.m2):
            self.assertEqual(len(of_type(self.frames[uid], "call_ended")), 1)
        self.assertEqual(
            [f["t"] for f in app_frames(self.frames[self.outsider])], []
        )

    def test_member_disconnect_ends_group_call(self):
        self.core.calls.start_call(self.group.conv_id, self.creator)
        self.core.calls.answer_call(self.group.conv_id, self.m1)

        self.core.calls.drop_user(self.m1)

        self.assertEqual(of_type(self.frames[self.m1], "call_ended"), [])
        for uid in (self.creator, self.m2):
            self.assertEqual(of_type(self.frames[uid], "call_ended")[0]["body"]["reason"], "disconnected")

    def test_deleting_group_ends_its_call(self):
        call = self.core.calls.start_call(self.group.conv_id, self.m1)
        self.core.calls.answer_call(self.group.conv_id, self.m2)

        self.assertTrue(self.core.router.delete_group(self.creator, self.group.conv_id))

        self.assertIsNone(self.core.calls.active_call(self.group.conv_id))
        for uid in (self.creator, self.m1, self.m2):
            [ended] = of_type(self.frames[uid], "call_ended")
            self.assertEqual(ended["body"]["reason"], "group_deleted")
            self.assertEqual(ended["body"]["call_id"], call.call_id)
        self.assertEqual(of_type(self.frames[self.outsider], "call_ended"), [])
        types = [f["t"] for f in app_frames(self.frames[self.m2])]
        self.assertLess(types.index("call_ended"), types.index("group_deleted"))

    def test_creator_leaving_ends_group_call(self):
        self.core.calls.start_call(self.group.conv_id, self.m1)

        self.assertEqual(self.core.router.leave_group(self.creator, self.group.conv_id), "deleted")

        self.assertIsNone(self.core.calls.active_call(self.group.conv_id))
        for uid in (self.creator, self.m1, self.m2):
            self.assertEqual(of_type(self.frames[uid], "call_ended")[0]["body"]["reason"], "group_deleted")

    def test_member_leaving_keeps_group_call(self):
        self.core.calls.start_call(self.group.conv_id, self.m1)

        self.assertEqual(self.core.router.leave_group(self.m2, self.group.conv_id), "left")

        self.assertIsNotNone(self.core.calls.active_call(self.group.conv_id))
        self.assertEqual(of_type(self.frames[self.m1], "call_ended"), [])


if __name__ == "__main__":
    unittest.main()

import struct
import unittest

from coding_agent_loop.errors import EventStreamError
from coding_agent_loop.providers.eventstream import EventStreamDecoder, encode_message


class EventStreamDecoderTests(unittest.TestCase):
    def test_frame_split_across_reads(self) -> None:
        frame = encode_message({":message-type": "event", ":event-type": "chunk"}, b'{"bytes": ""}')
        decoder = EventStreamDecoder()

        self.assertEqual([], decoder.feed(frame[:5]))
        self.assertEqual([], decoder.feed(frame[5:20]))
        messages = decoder.feed(frame[20:])

        self.assertEqual(1, len(messages))
        self.assertEqual("chunk", messages[0].headers[":event-type"])
        self.assertEqual(b'{"bytes": ""}', messages[0].payload)
        self.assertEqual(0, decoder.pending)

    def test_several_frames_in_one_read(self) -> None:
        data = encode_message({"n": 1}, b"a") + encode_message({"n": 2}, b"b") + encode_message({}, b"c")[:7]
        decoder = EventStreamDecoder()

        messages = decoder.feed(data)

        self.assertEqual([b"a", b"b"], [m.payload for m in messages])
        self.assertEqual(7, decoder.pending)

    def test_header_value_types(self) -> None:
        frame = encode_message({"flag": True, "off": False, "count": 7, "raw": b"\x00\x01", "name": "x"}, b"")

        headers = EventStreamDecoder().feed(frame)[0].headers

        self.assertEqual({"flag": True, "off": False, "count": 7, "raw": b"\x00\x01", "name": "x"}, headers)

    def test_bad_message_checksum_skips_frame(self) -> None:
        corrupt = bytearray(encode_message({"n": 1}, b"payload"))
        corrupt[-6] ^= 0xFF
        good = encode_message({"n": 2}, b"ok")

        messages = EventStreamDecoder().feed(bytes(corrupt) + good)

        self.assertEqual([b"ok"], [m.payload for m in messages])

    def test_bad_prelude_checksum_raises(self) -> None:
        frame = bytearray(encode_message({}, b"x"))
        frame[8:12] = struct.pack(">I", 0)

        with self.assertRaises(EventStreamError):
            EventStreamDecoder().feed(bytes(frame))


if __name__ == "__main__":
    unittest.main()

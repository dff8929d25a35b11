"""
Tests for the Protocol Parser

These tests verify the per-connection ProtocolParser:
- Complete multibulk and inline commands
- Commands split across any number of reads
- Several commands in a single read (pipelining)
- Protocol errors and resynchronisation

Run with: python -m pytest tests/test_protocol.py -v
"""

import time

import pytest
from dicekv.protocol.commands import Command
from dicekv.protocol.parser import ProtocolParser, split_inline
from dicekv.protocol.resp import ProtocolError, encode_command


def drain(parser: ProtocolParser):
    """Collect every complete command currently buffered."""
    commands = []
    while True:
        command = parser.next_command()
        if command is None:
            return commands
        commands.append(command)


class TestMultibulk:
    """Test RESP array requests."""

    def test_single_command(self, parser: ProtocolParser):
        parser.feed(b"*3\r\n$3\r\nSET\r\n$3\r\nfoo\r\n$3\r\nbar\r\n")

        command = parser.next_command()

        assert command.name == "SET"
        assert command.args == [b"foo", b"bar"]
        assert command.argc == 3
        assert parser.next_command() is None
        assert parser.buffered == 0

    def test_raw_bytes_kept(self, parser: ProtocolParser):
        data = encode_command("GET", "key")
        parser.feed(data)
        assert parser.next_command().raw == data

    def test_name_is_case_insensitive(self, parser: ProtocolParser):
        parser.feed(encode_command("sEt", "k", "v"))
        assert parser.next_command().name == "SET"

    def test_binary_safe_arguments(self, parser: ProtocolParser):
        value = b"line1\r\nline2\x00\xff"
        parser.feed(encode_command("SET", "k", value))
        assert parser.next_command().args == [b"k", value]

    def test_empty_multibulk_ignored(self, parser: ProtocolParser):
        parser.feed(b"*0\r\n*-1\r\n" + encode_command("PING"))
        assert [c.name for c in drain(parser)] == ["PING"]


class TestPartialReads:
    """Test commands arriving in pieces are buffered, not dropped."""

    def test_split_every_byte(self, parser: ProtocolParser):
        data = encode_command("SET", "key", "value")
        commands = []
        for i in range(len(data)):
            parser.feed(data[i:i + 1])
            commands.extend(drain(parser))

        assert len(commands) == 1
        assert commands[0].args == [b"key", b"value"]

    def test_600_byte_command_in_two_reads(self, parser: ProtocolParser):
        """A 600-byte command sent as 256 + 344 bytes frames exactly once."""
        overhead = len(encode_command("SET", "key", b""))
        data = encode_command("SET", "key", b"x" * (600 - overhead - 2))
        assert len(data) == 600

        parser.feed(data[:256])
        assert drain(parser) == []
        assert parser.buffered == 256

        parser.feed(data[256:])
        commands = drain(parser)

        assert len(commands) == 1
        assert commands[0].name == "SET"
        assert parser.buffered == 0

    def test_partial_header_waits(self, parser: ProtocolParser):
        parser.feed(b"*2\r\n$3")
        assert parser.next_command() is None
        parser.feed(b"\r\nGET\r\n$1\r\nk\r\n")
        assert parser.next_command().args == [b"k"]


class TestPipelining:
    """Test several commands in one read."""

    def test_many_commands_one_read(self, parser: ProtocolParser):
        parser.feed(
            encode_command("SET", "a", "1")
            + encode_command("GET", "a")
            + b"PING\r\n"
            + encode_command("DEL", "a")
        )

        assert [c.name for c in drain(parser)] == ["SET", "GET", "PING", "DEL"]

    def test_complete_command_followed_by_partial(self, parser: ProtocolParser):
        second = encode_command("GET", "a")
        parser.feed(encode_command("PING") + second[:5])

        assert [c.name for c in drain(parser)] == ["PING"]
        parser.feed(second[5:])
        assert [c.name for c in drain(parser)] == ["GET"]


class TestInline:
    """Test inline (telnet style) commands."""

    def test_inline_command(self, parser: ProtocolParser):
        parser.feed(b"set foo bar\r\n")
        command = parser.next_command()
        assert command == Command("SET", [b"foo", b"bar"], b"set foo bar\r\n")

    def test_inline_bare_newline(self, parser: ProtocolParser):
        parser.feed(b"GET foo\n")
        assert parser.next_command().args == [b"foo"]

    def test_inline_quotes(self, parser: ProtocolParser):
        parser.feed(b'SET greeting "hello world"\r\n')
        assert parser.next_command().args == [b"greeting", b"hello world"]

    def test_inline_waits_for_newline(self, parser: ProtocolParser):
        parser.feed(b"PIN")
        assert parser.next_command() is None
        parser.feed(b"G\r\n")
        assert parser.next_command().name == "PING"

    def test_empty_lines_ignored(self, parser: ProtocolParser):
        parser.feed(b"\r\n   \r\n\nPING\r\n")
        assert [c.name for c in drain(parser)] == ["PING"]

    def test_split_inline(self):
        assert split_inline(b"a  'b c'\t\"d\"") == [b"a", b"b c", b"d"]
        assert split_inline(b"") == []

    @pytest.mark.parametrize("line, words", [
        (b"SET k a\\b", [b"SET", b"k", b"a\\b"]),
        (b'SET k "a\\nb"', [b"SET", b"k", b"a\nb"]),
        (b'SET k "\\x41\\x62"', [b"SET", b"k", b"Ab"]),
        (b'SET k "say \\"hi\\""', [b"SET", b"k", b'say "hi"']),
        (b"SET k 'it\\'s'", [b"SET", b"k", b"it's"]),
        (b"SET k 'a\\nb'", [b"SET", b"k", b"a\\nb"]),
        (b'SET k ""', [b"SET", b"k", b""]),
    ])
    def test_split_inline_escapes(self, line, words):
        """Test backslashes and quotes follow the Redis inline rules."""
        assert split_inline(line) == words

    @pytest.mark.parametrize("line", [b'"abc', b"'abc", b'"a"b'])
    def test_split_inline_unbalanced(self, line):
        with pytest.raises(ValueError):
            split_inline(line)


class TestProtocolErrors:
    """Test malformed input yields an error and the parser recovers."""

    def test_unbalanced_quotes(self, parser: ProtocolParser):
        parser.feed(b'SET k "oops\r\nPING\r\n')

        with pytest.raises(ProtocolError, match="unbalanced quotes"):
            parser.next_command()
        assert parser.next_command().name == "PING"

    def test_invalid_multibulk_length(self, parser: ProtocolParser):
        parser.feed(b"*abc\r\n" + encode_command("PING"))

        with pytest.raises(ProtocolError, match="invalid multibulk length"):
            parser.next_command()
        assert parser.next_command().name == "PING"

    def test_expected_bulk_string(self, parser: ProtocolParser):
        parser.feed(b"*2\r\n$3\r\nGET\r\n:5\r\n" + encode_command("PING"))

        with pytest.raises(ProtocolError, match="expected '\\$', got ':'"):
            parser.next_command()
        assert parser.next_command().name == "PING"
        assert parser.buffered == 0

    def test_invalid_bulk_length(self, parser: ProtocolParser):
        parser.feed(b"*1\r\n$-3\r\n" + encode_command("PING"))

        with pytest.raises(ProtocolError, match="invalid bulk length"):
            parser.next_command()
        assert parser.next_command().name == "PING"

    def test_bulk_too_large(self):
        parser = ProtocolParser(max_bulk_length=10)
        parser.feed(b"*1\r\n$11\r\n")

        with pytest.raises(ProtocolError, match="invalid bulk length"):
            parser.next_command()

    def test_multibulk_too_large(self):
        parser = ProtocolParser(max_multibulk_length=2)
        parser.feed(b"*3\r\n")

        with pytest.raises(ProtocolError, match="invalid multibulk length"):
            parser.next_command()

    def test_inline_too_big(self):
        parser = ProtocolParser(max_inline_length=16)
        parser.feed(b"x" * 17)

        with pytest.raises(ProtocolError, match="too big inline request"):
            parser.next_command()
        assert parser.buffered == 0

    def test_bad_bulk_terminator(self, parser: ProtocolParser):
        parser.feed(b"*1\r\n$4\r\nPINGXX\r\n" + encode_command("PING"))

        with pytest.raises(ProtocolError, match="not terminated"):
            parser.next_command()
        assert parser.next_command().name == "PING"

    def test_bad_bulk_header_drops_whole_request(self, parser: ProtocolParser):
        """Test the payload of a broken multibulk request is never run as commands."""
        parser.feed(b"*2\r\n$3\r\nDEL\r\n$x\r\nFLUSHDB\r\n")

        with pytest.raises(ProtocolError, match="invalid bulk length"):
            parser.next_command()
        assert drain(parser) == []
        assert parser.buffered == 0

    def test_broken_request_tail_in_later_read(self, parser: ProtocolParser):
        """Test bytes of a broken request arriving later are skipped too."""
        parser.feed(b"*3\r\n$3\r\nSET\r\n$-7\r\n")
        with pytest.raises(ProtocolError, match="invalid bulk length"):
            parser.next_command()

        parser.feed(b"FLUSHDB\r\n")
        assert drain(parser) == []

        parser.feed(encode_command("PING"))
        assert [c.name for c in drain(parser)] == ["PING"]

    def test_too_big_inline_tail_is_dropped(self):
        """Test the rest of an oversized line is discarded as it arrives."""
        parser = ProtocolParser(max_inline_length=16)
        parser.feed(b"SET k " + b"x" * 20)

        with pytest.raises(ProtocolError, match="too big inline request"):
            parser.next_command()

        parser.feed(b"xxxx")
        assert drain(parser) == []
        parser.feed(b" FLUSHDB\r\nPING\r\n")
        assert [c.name for c in drain(parser)] == ["PING"]

    def test_format_response(self, parser: ProtocolParser):
        assert parser.format_response("OK") == b"+OK\r\n"
        assert parser.format_response(b"bar") == b"$3\r\nbar\r\n"


class TestIncrementalMultibulk:
    """Test large requests arriving in many reads are scanned once."""

    def test_partial_request_keeps_progress(self, parser: ProtocolParser):
        data = encode_command("DEL", *[f"key{i}" for i in range(10)])
        for i in range(0, len(data), 7):
            assert parser.buffered == i
            parser.feed(data[i:i + 7])
            commands = drain(parser)
        assert len(commands) == 1
        assert commands[0].args == [f"key{i}".encode() for i in range(10)]
        assert commands[0].raw == data

    def test_many_arguments_in_small_reads(self, parser: ProtocolParser):
        """Test a 100,000-key DEL fed in 4 KiB reads parses in linear time."""
        keys = [f"key:{i:06d}" for i in range(100_000)]
        data = encode_command("DEL", *keys)

        started = time.perf_counter()
        commands = []
        for i in range(0, len(data), 4096):
            parser.feed(data[i:i + 4096])
            commands.extend(drain(parser))
        elapsed = time.perf_counter() - started

        assert len(commands) == 1
        assert len(commands[0].args) == 100_000
        assert elapsed < 5.0

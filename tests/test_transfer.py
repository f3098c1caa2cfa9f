"""Tests for the chunked file transfer engine."""

import uuid

import pytest

from nexustransfer.lan.errors import (
    ChunkOutOfRange,
    TransferExists,
    TransferNotFound,
    UnsafeFileName,
)
from nexustransfer.lan.transfer import CHUNK_SIZE, TERMINAL_STATES, TransferEngine, TransferState


def _engine(tmp_path, **kwargs):
    return TransferEngine(download_dir=tmp_path / "downloads", **kwargs)


# ---------------------------------------------------------------------------
# Sending side
# ---------------------------------------------------------------------------


class TestSendSide:
    @pytest.mark.asyncio
    async def test_prepare_send_and_read_chunks(self, tmp_path):
        src = tmp_path / "report.pdf"
        content = bytes(i % 251 for i in range(150_000))
        src.write_bytes(content)
        engine = _engine(tmp_path)

        tid, name, size = await engine.prepare_send(src)
        assert name == "report.pdf"
        assert size == 150_000
        assert engine.is_outbound(tid)
        assert engine.outbound_ids() == [tid]

        first = await engine.read_chunk(tid, 0)
        second = await engine.read_chunk(tid, CHUNK_SIZE)
        third = await engine.read_chunk(tid, 2 * CHUNK_SIZE)
        assert len(first) == 65536
        assert len(second) == 65536
        assert len(third) == 150_000 - 2 * 65536
        assert await engine.read_chunk(tid, 150_000) is None
        assert first + second + third == content

        # Resuming mid-chunk reads only what is left.
        tail = await engine.read_chunk(tid, 147_456)
        assert len(tail) == 2544
        assert tail == content[147_456:]

    @pytest.mark.asyncio
    async def test_prepare_send_ids_are_fresh(self, tmp_path):
        src = tmp_path / "a.txt"
        src.write_text("a")
        engine = _engine(tmp_path)
        ids = {(await engine.prepare_send(src))[0] for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.asyncio
    async def test_prepare_send_missing_file(self, tmp_path):
        engine = _engine(tmp_path)
        with pytest.raises(FileNotFoundError):
            await engine.prepare_send(tmp_path / "nope.txt")
        assert engine.outbound_ids() == []

    @pytest.mark.asyncio
    async def test_prepare_send_directory(self, tmp_path):
        with pytest.raises(OSError):
            await _engine(tmp_path).prepare_send(tmp_path)

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path):
        src = tmp_path / "empty"
        src.write_bytes(b"")
        engine = _engine(tmp_path)
        tid, _, size = await engine.prepare_send(src)
        assert size == 0
        assert await engine.read_chunk(tid, 0) is None

    @pytest.mark.asyncio
    async def test_read_chunk_unknown_id(self, tmp_path):
        with pytest.raises(TransferNotFound):
            await _engine(tmp_path).read_chunk(uuid.uuid4(), 0)

    @pytest.mark.asyncio
    async def test_custom_chunk_size(self, tmp_path):
        src = tmp_path / "f"
        src.write_bytes(b"0123456789")
        engine = _engine(tmp_path, chunk_size=4)
        tid, _, _ = await engine.prepare_send(src)
        assert await engine.read_chunk(tid, 8) == b"89"


# ---------------------------------------------------------------------------
# Receiving side
# ---------------------------------------------------------------------------


class TestReceiveSide:
    @pytest.mark.asyncio
    async def test_completion_threshold(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        path = await engine.prepare_receive(tid, "out.bin", 100)
        assert path == tmp_path / "downloads" / "out.bin"
        assert path.exists()

        parts = [b"a" * 40, b"b" * 40, b"c" * 20]
        results = [
            await engine.apply_chunk(tid, 0, parts[0]),
            await engine.apply_chunk(tid, 40, parts[1]),
            await engine.apply_chunk(tid, 80, parts[2]),
        ]
        assert results == [False, False, True]
        assert engine.inbound_progress(tid) == (100, 100)

        await engine.finalize(tid)
        assert path.read_bytes() == b"".join(parts)

    @pytest.mark.asyncio
    async def test_out_of_order_chunks(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        path = await engine.prepare_receive(tid, "x", 6)
        assert await engine.apply_chunk(tid, 3, b"def") is False
        assert await engine.apply_chunk(tid, 0, b"abc") is True
        await engine.finalize(tid)
        assert path.read_bytes() == b"abcdef"

    @pytest.mark.asyncio
    async def test_repeated_chunk_counts_once(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        path = await engine.prepare_receive(tid, "x.bin", 100)
        assert await engine.apply_chunk(tid, 0, b"a" * 60) is False
        assert await engine.apply_chunk(tid, 0, b"a" * 60) is False
        assert engine.inbound_progress(tid) == (60, 100)

        assert await engine.apply_chunk(tid, 60, b"b" * 40) is True
        await engine.finalize(tid)
        assert path.read_bytes() == b"a" * 60 + b"b" * 40

    @pytest.mark.asyncio
    async def test_overlapping_chunks_count_new_bytes_only(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        path = await engine.prepare_receive(tid, "y.bin", 10)
        assert await engine.apply_chunk(tid, 0, b"0123") is False
        assert await engine.apply_chunk(tid, 2, b"2345") is False
        assert engine.inbound_progress(tid) == (6, 10)
        assert await engine.apply_chunk(tid, 8, b"89") is False
        assert engine.inbound_progress(tid) == (8, 10)
        assert await engine.apply_chunk(tid, 5, b"567") is True
        assert engine.inbound_progress(tid) == (10, 10)
        await engine.finalize(tid)
        assert path.read_bytes() == b"0123456789"

    @pytest.mark.asyncio
    async def test_chunk_past_declared_size(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        await engine.prepare_receive(tid, "x", 10)
        with pytest.raises(ChunkOutOfRange):
            await engine.apply_chunk(tid, 8, b"abc")
        with pytest.raises(ChunkOutOfRange):
            await engine.apply_chunk(tid, -1, b"a")
        assert engine.inbound_progress(tid) == (0, 10)

    @pytest.mark.asyncio
    async def test_apply_chunk_unknown_id(self, tmp_path):
        with pytest.raises(TransferNotFound):
            await _engine(tmp_path).apply_chunk(uuid.uuid4(), 0, b"x")

    @pytest.mark.asyncio
    async def test_duplicate_receive(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        await engine.prepare_receive(tid, "a", 1)
        with pytest.raises(TransferExists):
            await engine.prepare_receive(tid, "b", 1)

    @pytest.mark.asyncio
    async def test_truncates_existing_file(self, tmp_path):
        engine = _engine(tmp_path)
        existing = tmp_path / "downloads" / "f.txt"
        existing.parent.mkdir()
        existing.write_bytes(b"old content that is long")
        tid = uuid.uuid4()
        await engine.prepare_receive(tid, "f.txt", 3)
        await engine.apply_chunk(tid, 0, b"new")
        await engine.finalize(tid)
        assert existing.read_bytes() == b"new"

    @pytest.mark.asyncio
    async def test_zero_size_is_immediately_complete(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        await engine.prepare_receive(tid, "empty", 0)
        assert engine.inbound_progress(tid) == (0, 0)

    @pytest.mark.parametrize("name, expected", [
        ("report.pdf", "report.pdf"),
        ("../../etc/passwd", "passwd"),
        ("/abs/path/file.txt", "file.txt"),
        ("dir\\win.txt", "win.txt"),
    ])
    def test_destination_is_base_name(self, tmp_path, name, expected):
        engine = _engine(tmp_path)
        assert engine.destination_for(name) == tmp_path / "downloads" / expected

    @pytest.mark.parametrize("name", ["", ".", "..", "a/.."])
    def test_unusable_names(self, tmp_path, name):
        with pytest.raises(UnsafeFileName):
            _engine(tmp_path).destination_for(name)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class TestCleanup:
    @pytest.mark.asyncio
    async def test_finalize_idempotent(self, tmp_path):
        src = tmp_path / "f"
        src.write_bytes(b"x")
        engine = _engine(tmp_path)
        out_id, _, _ = await engine.prepare_send(src)
        in_id = uuid.uuid4()
        await engine.prepare_receive(in_id, "g", 1)

        for _ in range(2):
            await engine.finalize(out_id)
            await engine.finalize(in_id)
        await engine.finalize(uuid.uuid4())

        assert not engine.is_outbound(out_id)
        assert not engine.is_inbound(in_id)
        with pytest.raises(TransferNotFound):
            await engine.read_chunk(out_id, 0)
        with pytest.raises(TransferNotFound):
            await engine.apply_chunk(in_id, 0, b"x")

    @pytest.mark.asyncio
    async def test_cancel_removes_partial_file(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        path = await engine.prepare_receive(tid, "partial", 10)
        await engine.apply_chunk(tid, 0, b"12345")
        await engine.cancel(tid)
        assert not path.exists()
        assert engine.inbound_progress(tid) is None

    @pytest.mark.asyncio
    async def test_cancel_keeps_complete_file(self, tmp_path):
        engine = _engine(tmp_path)
        tid = uuid.uuid4()
        path = await engine.prepare_receive(tid, "done", 2)
        await engine.apply_chunk(tid, 0, b"ok")
        await engine.cancel(tid)
        assert path.read_bytes() == b"ok"

    @pytest.mark.asyncio
    async def test_close_all(self, tmp_path):
        engine = _engine(tmp_path)
        ids = [uuid.uuid4() for _ in range(3)]
        for i, tid in enumerate(ids):
            await engine.prepare_receive(tid, f"f{i}", 10)
        await engine.close_all()
        assert not any(engine.is_inbound(t) for t in ids)


def test_terminal_states():
    assert TransferState.COMPLETED in TERMINAL_STATES
    assert TransferState.TRANSFERRING not in TERMINAL_STATES

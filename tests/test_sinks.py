"""Tests for structbaggage.sinks."""

from __future__ import annotations

import io
import logging
import threading
from pathlib import Path

import orjson
import pytest

from structbaggage.events import EventSnapshot
from structbaggage.sinks import (
    CallableSink,
    FileSink,
    HandlerSink,
    Sink,
    SinkRegistry,
    StreamSink,
    fan_out,
    make_sink,
)


def _sink(name: str) -> CallableSink:
    return CallableSink(lambda s: None, name=name)


class TestMakeSink:
    def test_sink_passthrough(self) -> None:
        sink = _sink("s")
        assert make_sink(sink) is sink

    def test_logging_handler(self) -> None:
        sink = make_sink(logging.StreamHandler(io.StringIO()))
        assert isinstance(sink, HandlerSink)

    def test_file_path_string(self, tmp_path: Path) -> None:
        sink = make_sink(str(tmp_path / "out.log"))
        assert isinstance(sink, FileSink)
        sink.close()  # type: ignore[attr-defined]

    def test_file_path_object(self, tmp_path: Path) -> None:
        sink = make_sink(tmp_path / "out.log", name="file")
        assert isinstance(sink, FileSink)
        assert sink.name == "file"
        sink.close()  # type: ignore[attr-defined]

    def test_stream(self) -> None:
        assert isinstance(make_sink(io.StringIO()), StreamSink)

    def test_callable(self) -> None:
        got: list[EventSnapshot] = []
        sink = make_sink(got.append, name="collect")
        assert isinstance(sink, CallableSink)
        assert sink.name == "collect"

    def test_unsupported_type_raises(self) -> None:
        with pytest.raises(TypeError, match="Unsupported sink type"):
            make_sink(42)  # type: ignore[arg-type]

    def test_made_sinks_satisfy_protocol(self) -> None:
        assert isinstance(make_sink(io.StringIO()), Sink)


class TestStreamSink:
    def test_json_line(self, snapshot: EventSnapshot) -> None:
        buf = io.StringIO()
        StreamSink(buf).deliver(snapshot)
        lines = buf.getvalue().splitlines()
        assert len(lines) == 1
        data = orjson.loads(lines[0])
        assert data["message"] == "hello world"
        assert data["context"] == {"someKey": "93"}
        assert data["args"][-1] == "someKey=93"

    def test_console_line(self, snapshot: EventSnapshot) -> None:
        buf = io.StringIO()
        StreamSink(buf, json_lines=False).deliver(snapshot)
        assert "hello world" in buf.getvalue()

    def test_unserializable_value_falls_back_to_str(self, snapshot: EventSnapshot) -> None:
        class Opaque:
            def __str__(self) -> str:
                return "opaque!"

        from dataclasses import replace

        snap = replace(snapshot, key_values=(("obj", Opaque()),))
        buf = io.StringIO()
        StreamSink(buf).deliver(snap)
        assert orjson.loads(buf.getvalue())["key_values"] == {"obj": "opaque!"}


class TestFileSink:
    def test_writes_and_closes(self, tmp_path: Path, snapshot: EventSnapshot) -> None:
        path = tmp_path / "out.log"
        sink = FileSink(path)
        sink.deliver(snapshot)
        sink.close()
        assert orjson.loads(path.read_text(encoding="utf-8"))["message"] == "hello world"
        sink.close()


class TestHandlerSink:
    def test_forwards_to_handler(self, snapshot: EventSnapshot) -> None:
        buf = io.StringIO()
        handler = logging.StreamHandler(buf)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))
        HandlerSink(handler).deliver(snapshot)
        assert buf.getvalue().strip() == "INFO svc hello world"

    def test_respects_handler_level(self, snapshot: EventSnapshot) -> None:
        buf = io.StringIO()
        handler = logging.StreamHandler(buf)
        handler.setLevel(logging.ERROR)
        HandlerSink(handler).deliver(snapshot)
        assert buf.getvalue() == ""
        handler.setLevel(logging.INFO)
        HandlerSink(handler).deliver(snapshot)
        assert "hello world" in buf.getvalue()


class TestSinkRegistry:
    def test_attach_preserves_order(self) -> None:
        registry = SinkRegistry()
        a, b, c = _sink("a"), _sink("b"), _sink("c")
        for sink in (a, b, c):
            registry.attach(sink)
        assert list(registry) == [a, b, c]
        assert len(registry) == 3

    def test_attach_twice_is_noop(self) -> None:
        registry = SinkRegistry()
        a = _sink("a")
        registry.attach(a)
        registry.attach(a)
        assert list(registry) == [a]

    def test_detach(self) -> None:
        registry = SinkRegistry()
        a, b, c = _sink("a"), _sink("b"), _sink("c")
        for sink in (a, b, c):
            registry.attach(sink)
        assert registry.detach(b) is True
        assert registry.detach(b) is False
        assert list(registry) == [a, c]
        assert not registry.is_attached(b)

    def test_detach_by_name(self) -> None:
        registry = SinkRegistry()
        a, b = _sink("a"), _sink("b")
        registry.attach(a)
        registry.attach(b)
        assert registry.detach_by_name("a") is True
        assert registry.detach_by_name("missing") is False
        assert list(registry) == [b]

    def test_lookup(self) -> None:
        registry = SinkRegistry()
        a = _sink("a")
        registry.attach(a)
        assert registry.lookup("a") is a
        assert registry.lookup("missing") is None

    def test_detach_all_closes_sinks(self, tmp_path: Path) -> None:
        registry = SinkRegistry()
        file_sink = FileSink(tmp_path / "out.log")
        registry.attach(file_sink)
        registry.attach(_sink("plain"))
        registry.detach_all()
        assert len(registry) == 0
        assert file_sink._stream.closed

    def test_detach_all_closes_every_sink_when_one_fails(self, tmp_path: Path) -> None:
        class BrokenClose:
            name = "broken"

            def deliver(self, snapshot: EventSnapshot) -> None:
                pass

            def close(self) -> None:
                raise RuntimeError("close failed")

        registry = SinkRegistry()
        file_sink = FileSink(tmp_path / "out.log")
        registry.attach(BrokenClose())
        registry.attach(file_sink)
        with pytest.raises(RuntimeError, match="close failed"):
            registry.detach_all()
        assert len(registry) == 0
        assert file_sink._stream.closed

    def test_for_each_in_order(self) -> None:
        registry = SinkRegistry()
        for name in ("a", "b", "c"):
            registry.attach(_sink(name))
        seen: list[str] = []
        registry.for_each(lambda s: seen.append(s.name))
        assert seen == ["a", "b", "c"]

    def test_snapshot_unaffected_by_later_changes(self) -> None:
        registry = SinkRegistry()
        a = _sink("a")
        registry.attach(a)
        members = registry.snapshot()
        registry.attach(_sink("b"))
        registry.detach(a)
        assert members == (a,)

    def test_concurrent_mutation_during_fan_out(self, snapshot: EventSnapshot) -> None:
        registry = SinkRegistry()
        counts: dict[str, int] = {}
        lock = threading.Lock()

        def make(name: str) -> CallableSink:
            def record(_s: EventSnapshot) -> None:
                with lock:
                    counts[name] = counts.get(name, 0) + 1

            return CallableSink(record, name=name)

        stable = make("stable")
        registry.attach(stable)
        stop = threading.Event()
        errors: list[BaseException] = []

        def churn() -> None:
            i = 0
            while not stop.is_set():
                sink = make(f"churn-{i % 5}")
                registry.attach(sink)
                registry.detach(sink)
                i += 1

        def deliver() -> None:
            try:
                for _ in range(500):
                    members = registry.snapshot()
                    assert len(set(map(id, members))) == len(members)
                    fan_out(members, snapshot)
            except BaseException as exc:
                errors.append(exc)

        churner = threading.Thread(target=churn)
        churner.start()
        workers = [threading.Thread(target=deliver) for _ in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join()
        stop.set()
        churner.join()

        assert errors == []
        assert counts["stable"] == 2000


class TestFanOut:
    def test_returns_delivered_count(self, snapshot: EventSnapshot) -> None:
        got: list[EventSnapshot] = []
        assert fan_out((CallableSink(got.append), CallableSink(got.append)), snapshot) == 2
        assert got == [snapshot, snapshot]

    def test_empty(self, snapshot: EventSnapshot) -> None:
        assert fan_out((), snapshot) == 0

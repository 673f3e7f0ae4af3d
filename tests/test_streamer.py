import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from fangs.proto_events import EventType
from fangs.protocol import EventBatch, EventEnvelope
from fangs.streamer import EventStreamer, StreamStats

RUN_ID = bytes(range(16))


class _Collector(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length)
        self.server.received.append(
            (self.path, self.headers.get("Content-Type"), json.loads(body))
        )
        status = self.server.status
        self.send_response(status)
        payload = b"nope" if status >= 300 else b"{}"
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _Collector)
    srv.received = []
    srv.status = 200
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.shutdown()
    srv.server_close()


def _base_url(srv):
    host, port = srv.server_address
    return f"http://{host}:{port}"


def _envelope(n):
    return EventEnvelope(EventType.FILE_ACCESS, {"path": f"/etc/file{n}"})


def test_close_flushes_pending_events(server):
    streamer = EventStreamer(_base_url(server), RUN_ID, flush_interval=30.0)
    sent = [_envelope(n) for n in range(3)]
    for env in sent:
        streamer.send(env)
    streamer.close()

    assert len(server.received) == 1
    path, content_type, body = server.received[0]
    assert path == f"/v1/runs/{RUN_ID.hex()}/events"
    assert content_type == "application/json"
    batch = EventBatch.from_dict(body)
    assert batch.seq == 1
    assert len(batch.events) == len(sent)
    assert streamer.stats() == StreamStats(
        batches_sent=1, events_sent=len(sent), batch_send_errors=0
    )


def test_full_batches_flush_with_increasing_seq(server):
    streamer = EventStreamer(
        _base_url(server), RUN_ID, flush_interval=30.0, max_batch=2
    )
    total = 5
    for n in range(total):
        streamer.send(_envelope(n))
    streamer.close()

    batches = [EventBatch.from_dict(body) for _, _, body in server.received]
    seqs = [b.seq for b in batches]
    assert seqs == sorted(seqs)
    assert seqs[0] == 1
    assert len(set(seqs)) == len(seqs)
    assert all(len(b.events) <= 2 for b in batches)
    assert sum(len(b.events) for b in batches) == total
    assert streamer.stats().events_sent == total
    assert streamer.stats().batches_sent == len(batches)


def test_interval_flush_without_close(server):
    streamer = EventStreamer(_base_url(server), RUN_ID, flush_interval=0.05)
    streamer.send(_envelope(0))
    deadline = threading.Event()
    for _ in range(100):
        if server.received:
            break
        deadline.wait(0.02)
    received_before_close = len(server.received)
    streamer.close()
    assert received_before_close == 1


def test_failed_post_counts_error(server):
    server.status = 500
    streamer = EventStreamer(_base_url(server), RUN_ID, flush_interval=30.0)
    streamer.send(_envelope(0))
    streamer.close()
    stats = streamer.stats()
    assert stats.batch_send_errors == 1
    assert stats.batches_sent == 0
    assert stats.events_sent == 0


def test_send_after_close_raises(server):
    streamer = EventStreamer(_base_url(server), RUN_ID)
    streamer.close()
    with pytest.raises(RuntimeError):
        streamer.send(_envelope(0))


def test_close_without_events_posts_nothing(server):
    with EventStreamer(_base_url(server), RUN_ID, flush_interval=30.0) as streamer:
        pass
    assert server.received == []
    assert streamer.stats() == StreamStats()


def test_rejects_bad_run_id():
    with pytest.raises(ValueError):
        EventStreamer("http://127.0.0.1:1", b"short")
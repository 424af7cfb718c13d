from types import SimpleNamespace

from backend.app.services.progress_publisher import ProgressPublisher, job_channel, user_channel


class RecordingBroker:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def publish_sync(self, channel, payload):
        if self.fail:
            raise ConnectionError("redis down")
        self.sent.append((channel, payload))
        return 1


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _publisher(broker, clock, user_id=None):
    return ProgressPublisher("bulk-1", user_id=user_id, broker=broker, every_rows=10, interval_ms=1000, clock=clock)


def test_progress_is_throttled_by_rows_and_time():
    broker, clock = RecordingBroker(), Clock()
    pub = _publisher(broker, clock)

    assert pub.progress(0, 100, 0, 0, force=True) is True
    sent = [pub.progress(n, 100, n, 0) for n in range(1, 12)]
    assert sent.count(True) == 1
    assert broker.sent[-1][1]["processed"] == 10

    clock.now = 1.5
    assert pub.progress(11, 100, 11, 0) is True
    assert pub.progress(11, 100, 11, 0, force=True) is False

    payload = broker.sent[-1][1]
    assert payload["event"] == "progress"
    assert payload["progress"] == 11
    assert payload["stats"] == {"success": 11, "failed": 0, "remaining": 89}


def test_events_go_to_job_and_user_channels():
    broker = RecordingBroker()
    pub = _publisher(broker, Clock(), user_id=7)
    job = SimpleNamespace(status="COMPLETED", processed_rows=3, total_rows=3, progress=100,
                          success_count=2, failed_count=1)

    assert pub.completed(job) is True

    channels = [c for c, _ in broker.sent]
    assert channels == [job_channel("bulk-1"), user_channel(7)]
    assert broker.sent[1][1]["event"] == "bulk_completed"
    assert broker.sent[0][1]["stats"] == {"success": 2, "failed": 1}


def test_publish_failures_are_swallowed():
    pub = _publisher(RecordingBroker(fail=True), Clock())
    job = SimpleNamespace(status="FAILED", processed_rows=1, total_rows=3, progress=33,
                          success_count=1, failed_count=0)

    assert pub.progress(1, 3, 1, 0, force=True) is False
    assert pub.failed(job, "OperationalError: db down") is False

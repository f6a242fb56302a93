"""Relay worker: one inbound entry in, one outcome out."""

import pytest

from conftest import FakeRedis, FakeRedisClient
from src.relay.contracts.chat_envelope import Catalog, ChatEnvelope
from src.relay.infra import envelope_codec
from src.relay.infra.redis.stream_publisher import RedisStreamPublisher
from src.relay.infra.redis.worker import MessageOutcome, RelayWorker

INBOUND = "translateBefore"
OUTBOUND = "translateAfter"
REJECTED = "translateRejected"
GROUP = "translators"
TOPIC = "/8618100805249/18358183215/messages"


def _build_worker(redis: FakeRedis, pipeline) -> RelayWorker:
    client = FakeRedisClient(redis)
    return RelayWorker(
        client,
        pipeline,
        stream_name=INBOUND,
        group_name=GROUP,
        consumer_name="relay-test",
        outbound_publisher=RedisStreamPublisher(client, OUTBOUND, packet_field="packet"),
        rejected_publisher=RedisStreamPublisher(client, REJECTED, packet_field="packet"),
        packet_field="packet",
    )


def _inbound_packet(**overrides) -> bytes:
    fields = dict(
        catalog=Catalog.TEXT,
        timestamp=1500000000,
        from_user="8618100805249",
        to_user="18358183215",
        from_lang="zh",
        to_lang="en",
        from_text="你好",
    )
    fields.update(overrides)
    return envelope_codec.encode(TOPIC, ChatEnvelope(**fields), qos=1, packet_id=11)


@pytest.mark.asyncio
async def test_translated_message_is_republished_then_acked(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"1-0", {b"packet": _inbound_packet()})

    assert outcome is MessageOutcome.ACKED
    assert redis.acks == [(INBOUND, GROUP, b"1-0")]

    [entry] = redis.streams[OUTBOUND]
    meta, translated = await envelope_codec.decode(entry["packet"])
    assert meta.topic == TOPIC
    assert meta.qos == 1
    assert meta.packet_id == 11
    assert translated.from_text == "你好"
    assert translated.to_text == "Hello"
    assert translated.to_audio_url.startswith("download/8618100805249/18358183215/")


@pytest.mark.asyncio
async def test_str_field_names_are_accepted(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, "2-0", {"packet": _inbound_packet()})

    assert outcome is MessageOutcome.ACKED
    assert len(redis.streams[OUTBOUND]) == 1


@pytest.mark.asyncio
async def test_truncated_frame_is_rejected_and_acked(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())
    raw = _inbound_packet()[:-3]

    outcome = await worker.process_message(redis, b"3-0", {b"packet": raw})

    assert outcome is MessageOutcome.REJECTED
    assert OUTBOUND not in redis.streams
    assert redis.acks == [(INBOUND, GROUP, b"3-0")]

    [parked] = redis.streams[REJECTED]
    assert parked["packet"] == raw
    assert parked["source_id"] == "3-0"
    assert parked["error_type"] == "DecodeError"
    assert translate_stub.calls == []


@pytest.mark.asyncio
async def test_missing_packet_field_is_rejected(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"4-0", {b"other": b"x"})

    assert outcome is MessageOutcome.REJECTED
    assert redis.streams[REJECTED][0]["packet"] == b""


@pytest.mark.asyncio
async def test_non_publish_frame_is_rejected(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"5-0", {b"packet": b"\xc0\x00"})

    assert outcome is MessageOutcome.REJECTED
    assert redis.streams[REJECTED][0]["error_type"] == "UnexpectedPacketType"


@pytest.mark.asyncio
async def test_bad_audio_payload_is_rejected(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())
    raw = _inbound_packet(catalog=Catalog.AUDIO, from_text="", from_audio="***")

    outcome = await worker.process_message(redis, b"6-0", {b"packet": raw})

    assert outcome is MessageOutcome.REJECTED
    assert redis.streams[REJECTED][0]["error_type"] == "PayloadError"


@pytest.mark.asyncio
async def test_pipeline_failure_leaves_message_pending(make_pipeline, translate_stub, speech_stub):
    translate_stub.segments = []
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"7-0", {b"packet": _inbound_packet()})

    assert outcome is MessageOutcome.FAILED
    assert redis.acks == []
    assert OUTBOUND not in redis.streams
    assert REJECTED not in redis.streams


@pytest.mark.asyncio
async def test_publish_failure_leaves_message_pending(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis(fail_xadd_on=OUTBOUND)
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"8-0", {b"packet": _inbound_packet()})

    assert outcome is MessageOutcome.FAILED
    assert redis.acks == []


@pytest.mark.asyncio
async def test_reject_publish_failure_leaves_message_pending(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis(fail_xadd_on=REJECTED)
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"9-0", {b"packet": b"garbage"})

    assert outcome is MessageOutcome.FAILED
    assert redis.acks == []


class _BusyGroupRedis(FakeRedis):
    async def xgroup_create(self, name, groupname, id="$", mkstream=False):
        raise RuntimeError("BUSYGROUP Consumer Group name already exists")


class _BrokenRedis(FakeRedis):
    async def xgroup_create(self, name, groupname, id="$", mkstream=False):
        raise RuntimeError("NOPERM")


@pytest.mark.asyncio
async def test_consumer_group_creation(make_pipeline):
    redis = FakeRedis()
    await _build_worker(redis, make_pipeline())._ensure_consumer_group(redis)
    assert redis.groups == [(INBOUND, GROUP)]

    # Existing group is fine, anything else propagates.
    busy = _BusyGroupRedis()
    await _build_worker(busy, make_pipeline())._ensure_consumer_group(busy)

    broken = _BrokenRedis()
    with pytest.raises(RuntimeError):
        await _build_worker(broken, make_pipeline())._ensure_consumer_group(broken)


class _QueuedRedis(FakeRedis):
    def __init__(self, entries):
        super().__init__()
        self.entries = list(entries)
        self.reads = []

    async def xreadgroup(self, groupname, consumername, streams, count, block):
        self.reads.append((groupname, consumername, dict(streams), count))
        if not self.entries:
            return []
        entry = self.entries.pop(0)
        return [(INBOUND.encode(), [entry])]


@pytest.mark.asyncio
async def test_consume_once_reads_one_entry_at_a_time(make_pipeline, translate_stub, speech_stub):
    redis = _QueuedRedis([(b"10-0", {b"packet": _inbound_packet()}), (b"11-0", {b"packet": b"junk"})])
    worker = _build_worker(redis, make_pipeline())

    await worker._consume_once(redis)
    await worker._consume_once(redis)
    await worker._consume_once(redis)

    assert [r[3] for r in redis.reads] == [1, 1, 1]
    assert redis.reads[0][2] == {INBOUND: ">"}
    assert [ack[2] for ack in redis.acks] == [b"10-0", b"11-0"]
    assert len(redis.streams[OUTBOUND]) == 1
    assert len(redis.streams[REJECTED]) == 1


@pytest.mark.asyncio
async def test_reject_ack_failure_leaves_message_pending(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis(fail_xack=True)
    worker = _build_worker(redis, make_pipeline())

    outcome = await worker.process_message(redis, b"12-0", {b"packet": b"garbage"})

    assert outcome is MessageOutcome.FAILED
    assert len(redis.streams[REJECTED]) == 1


@pytest.mark.asyncio
async def test_republished_text_message_carries_no_audio(make_pipeline, translate_stub, speech_stub):
    redis = FakeRedis()
    worker = _build_worker(redis, make_pipeline())
    raw = _inbound_packet(from_audio="UkFXQVVESU8=")

    outcome = await worker.process_message(redis, b"13-0", {b"packet": raw})

    assert outcome is MessageOutcome.ACKED
    _, translated = await envelope_codec.decode(redis.streams[OUTBOUND][0]["packet"])
    assert translated.from_audio == ""
    assert translated.to_text == "Hello"


class _PendingRedis(_QueuedRedis):
    """Tracks the consumer group's pending list; XAUTOCLAIM hands back unacked entries."""

    def __init__(self, entries):
        super().__init__(entries)
        self.pending = {}

    async def xreadgroup(self, groupname, consumername, streams, count, block):
        response = await super().xreadgroup(groupname, consumername, streams, count, block)
        for _, messages in response:
            for message_id, fields in messages:
                self.pending[message_id] = fields
        return response

    async def xack(self, stream, group, message_id):
        self.pending.pop(message_id, None)
        return await super().xack(stream, group, message_id)

    async def xautoclaim(self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None):
        await super().xautoclaim(name, groupname, consumername, min_idle_time, start_id, count)
        claimed = list(self.pending.items())[: count or None]
        return [b"0-0", claimed, []]


@pytest.mark.asyncio
async def test_failed_message_is_redelivered(make_pipeline, translate_stub, speech_stub):
    redis = _PendingRedis([(b"20-0", {b"packet": _inbound_packet()})])
    worker = _build_worker(redis, make_pipeline())

    # First delivery fails: nothing translated, entry stays pending.
    translate_stub.segments = []
    await worker._consume_once(redis)
    assert b"20-0" in redis.pending
    assert OUTBOUND not in redis.streams

    # Translator recovers; the next pass claims the pending entry instead of reading new ones.
    translate_stub.segments = ["Hello"]
    await worker._consume_once(redis)

    assert redis.pending == {}
    assert redis.acks == [(INBOUND, GROUP, b"20-0")]
    assert len(redis.streams[OUTBOUND]) == 1
    assert len(redis.reads) == 1
    assert redis.autoclaims[-1]["count"] == 1
    assert redis.autoclaims[-1]["min_idle_time"] == worker.reclaim_idle_ms


@pytest.mark.asyncio
async def test_pending_entry_deleted_from_stream_is_acked(make_pipeline):
    class _TrimmedRedis(FakeRedis):
        async def xautoclaim(self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None):
            return [b"0-0", [(b"30-0", None)], []]

    redis = _TrimmedRedis()
    worker = _build_worker(redis, make_pipeline())

    assert await worker._reclaim_once(redis) is True
    assert redis.acks == [(INBOUND, GROUP, b"30-0")]

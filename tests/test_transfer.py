import hashlib

import pytest

from conftest import FakeTransport
from engine_cache import CancelToken
from engine_cache.exceptions import (
    CorruptError,
    DownloadCancelledError,
    EngineIOError,
    NetworkError,
)
from engine_cache.models.progress import ProgressThrottle, TransferProgress
from engine_cache.transfer.downloader import Downloader
from engine_cache.transfer.integrity import IntegrityVerifier, normalize_signature

URL = "https://builds.example.test/Robust_7.0.0.zip"
BODY = b"0123456789ab"


@pytest.fixture
def transport():
    transport = FakeTransport()
    transport.packages[URL] = BODY
    return transport


def make_downloader(transport, **kwargs) -> Downloader:
    kwargs.setdefault("base_delay", 0)
    downloader = Downloader(transport, **kwargs)
    downloader.CHUNK_SIZE = 4
    return downloader


@pytest.mark.asyncio
async def test_fetch_writes_body_to_destination(tmp_path, transport):
    destination = tmp_path / "engine.part"

    written = await make_downloader(transport).fetch(URL, destination)

    assert written == len(BODY)
    assert destination.read_bytes() == BODY


@pytest.mark.asyncio
async def test_progress_is_throttled_but_first_and_last_are_delivered(
    tmp_path, transport
):
    reports = []
    downloader = make_downloader(transport, progress_interval=3600)

    await downloader.fetch(
        URL, tmp_path / "engine.part", progress=lambda *args: reports.append(args)
    )

    assert reports == [(0, len(BODY)), (len(BODY), len(BODY))]


@pytest.mark.asyncio
async def test_every_chunk_is_reported_without_throttle(tmp_path, transport):
    reports = []
    downloader = make_downloader(transport, progress_interval=0)

    await downloader.fetch(
        URL, tmp_path / "engine.part", progress=lambda *args: reports.append(args)
    )

    assert [done for done, _ in reports] == [0, 4, 8, 12, 12]


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_transfer(tmp_path, transport):
    def broken(done, total):
        raise RuntimeError("ui went away")

    destination = tmp_path / "engine.part"
    await make_downloader(transport).fetch(URL, destination, progress=broken)

    assert destination.read_bytes() == BODY


@pytest.mark.asyncio
async def test_network_failures_are_retried(tmp_path, transport):
    transport.failures[URL] = [NetworkError("reset", URL)]
    destination = tmp_path / "engine.part"

    await make_downloader(transport, max_attempts=2).fetch(URL, destination)

    assert len(transport.stream_calls) == 2
    assert destination.read_bytes() == BODY


@pytest.mark.asyncio
async def test_exhausted_retries_raise_and_clean_up(tmp_path, transport):
    transport.failures[URL] = [NetworkError("reset", URL), NetworkError("reset", URL)]
    destination = tmp_path / "engine.part"

    with pytest.raises(NetworkError):
        await make_downloader(transport, max_attempts=2).fetch(URL, destination)

    assert not destination.exists()


@pytest.mark.asyncio
async def test_cancelled_token_stops_the_transfer(tmp_path, transport):
    token = CancelToken()
    destination = tmp_path / "engine.part"

    def cancel_after_first_chunk(done, total):
        if done > 0:
            token.cancel()

    with pytest.raises(DownloadCancelledError):
        await make_downloader(transport, progress_interval=0).fetch(
            URL, destination, progress=cancel_after_first_chunk, cancel_token=token
        )

    assert not destination.exists()


@pytest.mark.asyncio
async def test_unwritable_destination_is_an_io_error(tmp_path, transport):
    with pytest.raises(EngineIOError):
        await make_downloader(transport).fetch(URL, tmp_path / "missing" / "engine.part")


def test_throttle_uses_its_clock():
    now = [0.0]
    calls = []
    throttle = ProgressThrottle(lambda d, t: calls.append(d), 1.0, clock=lambda: now[0])
    progress = TransferProgress(total_bytes=10)

    throttle.report(progress)
    progress.advance(5)
    throttle.report(progress)
    now[0] = 1.5
    throttle.report(progress)

    assert calls == [0, 5]


def test_compute_matches_sha256(tmp_path):
    package = tmp_path / "engine.zip"
    package.write_bytes(BODY)

    assert IntegrityVerifier().compute(package) == hashlib.sha256(BODY).hexdigest()


@pytest.mark.asyncio
async def test_verify_accepts_equivalent_spellings(tmp_path):
    package = tmp_path / "engine.zip"
    package.write_bytes(BODY)
    digest = hashlib.sha256(BODY).hexdigest()
    verifier = IntegrityVerifier()

    assert await verifier.verify(package, digest.upper()) == digest
    assert await verifier.verify(package, f" sha256:{digest}\n") == digest


@pytest.mark.asyncio
async def test_verify_rejects_mismatch(tmp_path):
    package = tmp_path / "engine.zip"
    package.write_bytes(BODY)

    with pytest.raises(CorruptError) as exc_info:
        await IntegrityVerifier().verify(package, "00" * 32)

    assert exc_info.value.expected == "00" * 32
    assert exc_info.value.actual == hashlib.sha256(BODY).hexdigest()


@pytest.mark.asyncio
async def test_verify_missing_file_is_an_io_error(tmp_path):
    with pytest.raises(EngineIOError):
        await IntegrityVerifier().verify(tmp_path / "gone.zip", "00")


def test_normalize_signature():
    assert normalize_signature("  SHA256:ABCDEF ") == "abcdef"

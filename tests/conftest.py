import asyncio
import os
import sys
import time

import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from stream_layout import StreamLayout  # noqa: E402
from encoder_manager import EncoderProcessManager  # noqa: E402
from lifecycle import StreamLifecycleOrchestrator  # noqa: E402


# Stands in for ffmpeg: takes the playlist path as its last argument and
# behaves according to FAKE_ENCODER_MODE.
#   run      - write a segment and rewrite the playlist every 100ms until killed
#   finish   - like run, but exit 0 after three segments
#   crash    - print an input error and exit 1
#   silent   - never write anything
#   stubborn - like silent, but ignore SIGTERM
FAKE_ENCODER = r'''#!{python}
import os
import signal
import sys
import time

mode = os.environ.get("FAKE_ENCODER_MODE", "run")
playlist = sys.argv[-1]
out_dir = os.path.dirname(playlist)

if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

print("fake encoder started", flush=True)

if mode == "crash":
    sys.stderr.write("Error opening input: Connection refused\n")
    sys.stderr.flush()
    sys.exit(1)
if mode in ("silent", "stubborn"):
    while True:
        time.sleep(0.1)

segments = []
while True:
    name = "segment_%03d.ts" % len(segments)
    with open(os.path.join(out_dir, name), "wb") as fh:
        fh.write(b"\x47" * 188)
    segments.append(name)
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:2",
             "#EXT-X-MEDIA-SEQUENCE:0"]
    for segment in segments:
        lines += ["#EXTINF:2.000000,", segment]
    tmp = playlist + ".tmp"
    with open(tmp, "w") as fh:
        fh.write("\n".join(lines) + "\n")
    os.replace(tmp, playlist)
    sys.stderr.write("frame=%d fps=30 bitrate=1000.0kbits/s\r" % (len(segments) * 60))
    sys.stderr.flush()
    if mode == "finish" and len(segments) >= 3:
        sys.exit(0)
    time.sleep(0.1)
'''


@pytest.fixture
def fake_encoder(tmp_path):
    """Path to an executable fake ffmpeg"""
    path = tmp_path / "fake-ffmpeg"
    path.write_text(FAKE_ENCODER.replace("{python}", sys.executable))
    os.chmod(path, 0o755)
    return str(path)


@pytest.fixture
def layout(tmp_path):
    stream_layout = StreamLayout(media_root=str(tmp_path / "media"))
    stream_layout.prepare_media_root()
    return stream_layout


@pytest.fixture
def encoder_manager(layout, fake_encoder):
    return EncoderProcessManager(
        layout,
        ffmpeg_path=fake_encoder,
        stop_timeout=2.0,
        check_interval=0.05,
        check_max_attempts=100,
    )


@pytest_asyncio.fixture
async def orchestrator(layout, encoder_manager):
    orch = StreamLifecycleOrchestrator(layout, encoder_manager)
    yield orch
    await orch.shutdown()


@pytest.fixture
def wait_until():
    """Poll a predicate from async code until it holds or the timeout expires"""
    async def _wait_until(predicate, timeout=5.0, interval=0.05):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()
    return _wait_until

"""Replay recorded card footage through ffmpeg as a stream of JPEG frames."""

import logging
import subprocess
from pathlib import Path
from typing import Generator, List, Optional, Tuple

try:
    import ffmpeg
except ImportError:
    ffmpeg = None

logger = logging.getLogger(__name__)

JPEG_START = b'\xff\xd8'
JPEG_END = b'\xff\xd9'

# Return codes from terminating ffmpeg after we stop reading
_EXPECTED_EXIT_CODES = (0, -15, -13, 255)


def split_mjpeg_frames(buffer: bytearray) -> Tuple[bytearray, List[bytes]]:
    """
    Cut complete JPEG images off the front of an MJPEG byte buffer.

    Returns (remaining_buffer, complete_frames). Bytes before the first
    start marker are discarded; a trailing partial image is kept for the
    next read.
    """
    frames = []
    while True:
        start = buffer.find(JPEG_START)
        if start < 0:
            # Keep a possible half marker at the end
            return (buffer[-1:] if buffer[-1:] == b'\xff' else bytearray()), frames
        end = buffer.find(JPEG_END, start + 2)
        if end < 0:
            return buffer[start:], frames
        frames.append(bytes(buffer[start:end + 2]))
        buffer = buffer[end + 2:]


def extract_frames_generator(
    media_file: Path,
    interval_seconds: float = 0.4,
    frame_width: Optional[int] = 720,
    start_time: Optional[float] = None,
    chunk_size: int = 65536,
) -> Generator[Tuple[float, bytes], None, None]:
    """
    Yield (timestamp, jpeg_bytes) from a video file at a fixed interval.

    Args:
        media_file: Path to the video file
        interval_seconds: Interval between frames in seconds (default: 0.4)
        frame_width: Scale frames to this width, keeping aspect ratio (None for source size)
        start_time: Start offset in seconds
        chunk_size: Bytes read from the ffmpeg pipe per iteration

    Raises:
        RuntimeError: If ffmpeg-python is not installed
        FileNotFoundError: If the media file does not exist
    """
    if ffmpeg is None:
        raise RuntimeError("ffmpeg-python is not installed. Please install it with: pip install ffmpeg-python")

    media_file = Path(media_file)
    if not media_file.exists():
        raise FileNotFoundError(f"Media file not found: {media_file}")

    input_kwargs = {'threads': '0'}
    if start_time:
        input_kwargs['ss'] = start_time

    stream = ffmpeg.input(str(media_file), **input_kwargs)
    if frame_width:
        stream = stream.filter('scale', frame_width, -2)
    stream = stream.filter('fps', 1.0 / interval_seconds)

    process = (
        stream
        .output('pipe:', format='image2pipe', vcodec='mjpeg', **{'q:v': '5'})
        .run_async(pipe_stdout=True, pipe_stderr=subprocess.PIPE)
    )
    logger.info(f"Started ffmpeg replay of {media_file.name} every {interval_seconds:.2f}s")

    buffer = bytearray()
    frame_index = 0
    offset = start_time or 0.0
    try:
        while True:
            chunk = process.stdout.read(chunk_size)
            if not chunk:
                break
            buffer.extend(chunk)
            buffer, frames = split_mjpeg_frames(buffer)
            for frame_bytes in frames:
                yield offset + frame_index * interval_seconds, frame_bytes
                frame_index += 1

        process.wait()
        if process.returncode not in _EXPECTED_EXIT_CODES:
            stderr = process.stderr.read().decode('utf8', errors='ignore')
            logger.warning(f"FFmpeg exited with code {process.returncode}: {stderr[-200:]}")
    finally:
        if process.poll() is None:
            try:
                process.terminate()
                process.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                process.kill()
        if process.stdout:
            process.stdout.close()
        if process.stderr:
            process.stderr.close()

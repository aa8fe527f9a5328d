"""Local media capture on top of ``aiortc.contrib.media``.

``source`` is anything ffmpeg can open: a file, a URL, or a capture device
together with its ``format`` (``v4l2``, ``avfoundation``, ``dshow``...).
"""
import logging
from typing import Dict, List, Optional

from aiortc.contrib.media import MediaPlayer

from .errors import MediaCaptureDeclined

logger = logging.getLogger(__name__)


class MediaCapture:
    def __init__(
        self,
        source: Optional[str] = None,
        format: Optional[str] = None,
        options: Optional[Dict[str, str]] = None,
        video: bool = True,
        audio: bool = True,
        loop: bool = False,
    ):
        self.source = source
        self.format = format
        self.options = options or {}
        self.video = video
        self.audio = audio
        self.loop = loop
        self.player: Optional[MediaPlayer] = None

    async def __call__(self) -> List:
        if not self.source:
            raise MediaCaptureDeclined("No capture source configured")
        try:
            self.player = MediaPlayer(self.source, format=self.format, options=self.options, loop=self.loop)
        except Exception as e:
            raise MediaCaptureDeclined(f"Could not open {self.source}: {e}") from e

        tracks = []
        if self.video and self.player.video is not None:
            tracks.append(self.player.video)
        if self.audio and self.player.audio is not None:
            tracks.append(self.player.audio)
        if not tracks:
            raise MediaCaptureDeclined(f"{self.source} has none of the requested tracks")
        logger.info(f"Captured {', '.join(t.kind for t in tracks)} from {self.source}")
        return tracks

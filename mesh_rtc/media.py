"""Local media acquisition.

The LocalMediaSource owns the tracks this participant contributes to every
peer session. Tracks are opened once, shared by reference across sessions,
and stopped exactly once when the orchestrator shuts down.

Capture is delegated to aiortc's MediaPlayer, which reads from a file, a
stream URL, or a capture device (e.g. ``/dev/video0`` with ``format="v4l2"``,
``"default:none"`` with ``format="avfoundation"``).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from aiortc.contrib.media import MediaPlayer

logger = logging.getLogger(__name__)


class MediaAcquisitionError(Exception):
    """Raised when local media cannot be acquired."""


@dataclass
class MediaTracks:
    """The set of local tracks returned by a successful acquisition.

    Attributes:
        audio: Local audio track, or None.
        video: Local video track, or None.
    """

    audio: Optional[Any] = None
    video: Optional[Any] = None

    def __iter__(self) -> Iterator[Any]:
        for track in (self.audio, self.video):
            if track is not None:
                yield track

    def __len__(self) -> int:
        return sum(1 for _ in self)


class LocalMediaSource:
    """Acquires and owns the local media tracks.

    Attributes:
        source: File path, URL or device passed to the player. None means no
            capture source is configured and acquisition always fails.
        format: Optional container/device format (``v4l2``, ``avfoundation``...).
        options: Optional player options (``video_size``, ``framerate``...).
    """

    def __init__(
        self,
        source: Optional[str] = None,
        format: Optional[str] = None,
        options: Optional[Dict[str, str]] = None,
        player_factory: Optional[Callable[..., Any]] = None,
    ):
        self.source = source
        self.format = format
        self.options = options or {}
        self._player_factory = player_factory or MediaPlayer
        self._player = None
        self._tracks: Optional[MediaTracks] = None
        self._stopped = False

    @property
    def available(self) -> bool:
        """True once tracks were acquired and have not been stopped."""
        return self._tracks is not None and not self._stopped

    @property
    def tracks(self) -> List[Any]:
        """Currently live local tracks (empty if none were acquired)."""
        if not self.available:
            return []
        return list(self._tracks)

    async def acquire(self, want_video: bool = True, want_audio: bool = True) -> MediaTracks:
        """Open the capture source and return the requested tracks.

        Calling again after a successful acquisition returns the same tracks.

        Args:
            want_video: Whether a video track is requested.
            want_audio: Whether an audio track is requested.

        Returns:
            MediaTracks with at least one track.

        Raises:
            MediaAcquisitionError: If the source is missing, cannot be opened,
                or provides none of the requested kinds.
        """
        if self._stopped:
            raise MediaAcquisitionError("Media source already stopped")
        if self._tracks is not None:
            return self._tracks
        if not want_video and not want_audio:
            raise MediaAcquisitionError("Neither audio nor video requested")
        if not self.source:
            raise MediaAcquisitionError("No capture source configured")

        logger.info(f"Opening media source {self.source} (format={self.format})")
        try:
            player = await asyncio.to_thread(
                self._player_factory,
                self.source,
                format=self.format,
                options=self.options,
            )
        except Exception as e:
            raise MediaAcquisitionError(f"Failed to open {self.source}: {e}") from e

        tracks = MediaTracks(
            audio=player.audio if want_audio else None,
            video=player.video if want_video else None,
        )
        if self._stopped:
            self._release(player)
            raise MediaAcquisitionError("Media source stopped while it was opening")
        if not len(tracks):
            self._release(player)
            raise MediaAcquisitionError(
                f"{self.source} provides none of the requested tracks "
                f"(video={want_video}, audio={want_audio})"
            )
        # Stop kinds the caller did not ask for so the player does not decode them.
        self._release(player, keep=tracks)

        self._player = player
        self._tracks = tracks
        logger.info(
            f"Local media acquired: {', '.join(track.kind for track in tracks)}"
        )
        return tracks

    @staticmethod
    def _release(player, keep: Optional[MediaTracks] = None) -> None:
        """Stop every track of ``player`` except those in ``keep``.

        aiortc's MediaPlayer closes its container once its last track stops.
        """
        for kind in ("audio", "video"):
            track = getattr(player, kind, None)
            if track is None or (keep is not None and getattr(keep, kind) is track):
                continue
            track.stop()
            logger.debug(f"Released unused {kind} track")

    def stop(self) -> None:
        """Stop every local track. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        if self._tracks is None:
            return
        for track in self._tracks:
            track.stop()
            logger.info(f"Stopped local track: {track.kind}")

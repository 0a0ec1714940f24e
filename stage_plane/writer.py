import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait

from stage_plane.base import RemoteStore
from stage_plane.errors import CancelledError, StagePlaneError, TransportError

logger = logging.getLogger(__name__)


class ObjectWriter:
    """
    Uploads file bodies as blobs, up to `fan_out` requests in flight.

    Any failed upload aborts the whole batch. Blobs already written stay in the
    remote store unreferenced.
    """

    def __init__(self, remote: RemoteStore, fan_out: int = 10) -> None:
        self.remote = remote
        self.fan_out = max(1, fan_out)

    def _upload(self, target: str, body: str, cancel: threading.Event | None) -> str:
        if cancel is not None and cancel.is_set():
            raise CancelledError("Publish cancelled during object upload")
        return self.remote.write_blob(target, body.encode("utf-8"))

    def write(
        self,
        target: str,
        uploads: dict[str, str],
        cancel: threading.Event | None = None,
    ) -> dict[str, str]:
        """Upload every body and return object references keyed by path."""
        if not uploads:
            return {}

        # identical bodies share one object, upload each once
        paths_by_body: dict[str, list[str]] = {}
        for path, body in uploads.items():
            paths_by_body.setdefault(body, []).append(path)

        written: dict[str, str] = {}
        workers = min(self.fan_out, len(paths_by_body))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._upload, target, body, cancel): body
                for body in paths_by_body
            }
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()

            for future in done:
                error = future.exception()
                if error is None:
                    continue
                if isinstance(error, StagePlaneError):
                    raise error
                raise TransportError(f"Object upload failed: {error}") from error

            # FIRST_EXCEPTION returns with everything done when nothing failed
            for future, body in futures.items():
                object_ref = future.result()
                for path in paths_by_body[body]:
                    written[path] = object_ref

        logger.info(f"Uploaded {len(paths_by_body)} objects for {len(uploads)} paths")
        return written

"""HTTP data transfer helpers shared by the client and its job sessions.

- `post_data`: JSON POST that never raises; connection failures come back as
  a broken-connection error body with status 500.
- `upload_files`: multipart upload of blobs in chunks.
- `walk_and_store_blobs` / `handle_blob`: locate binary leaves in job input
  data, upload them and substitute remote file handles.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from jobrelay.core.exceptions import (
    BROKEN_CONNECTION_MSG,
    RemoteServiceException,
    UploadError,
)
from jobrelay.core.interfaces.http_client import HttpClientPort
from jobrelay.core.models.files import BlobFile, FileData, UploadResponse
from jobrelay.core.settings import logger

PathKey = Union[int, str]


def auth_headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


async def post_data(
    http: HttpClientPort,
    url: str,
    body: Any,
    token: Optional[str] = None,
) -> Tuple[Dict[str, Any], int]:
    """POST ``body`` as JSON and return ``(response_body, status)``."""
    try:
        resp = await http.post(url, json=body, headers=auth_headers(token))
    except RemoteServiceException as exc:
        logger.warning(
            f"[http:post] request failed url={url} status={exc.response.status} title={exc.response.title}"
        )
        return {"error": BROKEN_CONNECTION_MSG}, 500

    payload = resp.get("body")
    if not isinstance(payload, dict):
        logger.debug(f"[http:post] non-JSON response url={url} status={resp.get('status')}")
        return {"error": f"Could not parse server response: {str(payload)[:100]}"}, 500
    return payload, int(resp.get("status", 500))


async def upload_files(
    http: HttpClientPort,
    root: str,
    files: List[BlobFile],
    token: Optional[str] = None,
    upload_id: Optional[str] = None,
    chunk_size: int = 1000,
) -> UploadResponse:
    """Upload ``files`` to ``{root}/upload`` and collect the returned handles.

    Files are sent in chunks of ``chunk_size``; handle order matches input
    order. Any failed chunk aborts the upload with an error marker.
    """
    upload_url = f"{root}/upload?upload_id={upload_id}" if upload_id else f"{root}/upload"
    handles: List[str] = []
    for start in range(0, len(files), chunk_size):
        chunk = files[start : start + chunk_size]
        try:
            resp = await http.upload(upload_url, chunk, headers=auth_headers(token))
        except RemoteServiceException as exc:
            logger.warning(f"[upload] request failed url={upload_url} detail={exc.response.detail}")
            return UploadResponse(error=BROKEN_CONNECTION_MSG)

        body = resp.get("body")
        if resp.get("status") != 200 or not isinstance(body, list):
            logger.warning(f"[upload] unexpected response url={upload_url} status={resp.get('status')}")
            error = body.get("error") if isinstance(body, dict) else None
            return UploadResponse(error=error or BROKEN_CONNECTION_MSG)
        handles.extend(str(handle) for handle in body)
    return UploadResponse(files=handles)


@dataclass
class BlobRef:
    path: List[PathKey]
    blob: BlobFile


def _as_blob(value: Any) -> Optional[BlobFile]:
    if isinstance(value, BlobFile):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BlobFile(content=bytes(value))
    return None


def walk_and_store_blobs(value: Any, path: Optional[List[PathKey]] = None) -> List[BlobRef]:
    """Depth-first list of every blob leaf in ``value`` with its path.

    Lists and tuples are traversed elementwise, dicts by key; bytes-like
    values and ``BlobFile`` instances are leaves.
    """
    path = path or []
    blob = _as_blob(value)
    if blob is not None:
        return [BlobRef(path=path, blob=blob)]
    refs: List[BlobRef] = []
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            refs.extend(walk_and_store_blobs(item, path + [i]))
    elif isinstance(value, dict):
        for key, item in value.items():
            refs.extend(walk_and_store_blobs(item, path + [key]))
    return refs


def _substitute(value: Any, handles: Iterator[Dict[str, Any]]) -> Any:
    if _as_blob(value) is not None:
        return next(handles)
    if isinstance(value, (list, tuple)):
        return [_substitute(item, handles) for item in value]
    if isinstance(value, dict):
        return {key: _substitute(item, handles) for key, item in value.items()}
    return value


async def handle_blob(
    http: HttpClientPort,
    root: str,
    data: List[Any],
    token: Optional[str] = None,
    chunk_size: int = 1000,
) -> List[Any]:
    """Return a copy of ``data`` with every blob replaced by its uploaded file handle.

    Raises:
        UploadError: if the upload failed or returned fewer handles than blobs.
    """
    refs = walk_and_store_blobs(data)
    if not refs:
        return list(data)

    logger.debug(f"[upload] uploading blobs count={len(refs)} paths={[r.path for r in refs][:8]}")
    response = await upload_files(
        http, root, [ref.blob for ref in refs], token=token, chunk_size=chunk_size
    )
    if response.error is not None:
        raise UploadError(response.error)
    if len(response.files) != len(refs):
        raise UploadError(
            f"Upload returned {len(response.files)} handles for {len(refs)} files"
        )

    file_handles = iter(
        FileData(path=handle, orig_name=ref.blob.name).model_dump()
        for handle, ref in zip(response.files, refs)
    )
    return _substitute(list(data), file_handles)

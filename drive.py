"""Upload of rendered PDFs to Google Drive (v3 multipart upload)."""
import io
import json
import logging
import uuid

import requests

from errors import UploadError
from logs import debug_event

logger = logging.getLogger("html2drive.drive")

GOOGLE_DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
DRIVE_VIEW_URL = "https://drive.google.com/file/d/{id}/view"
PDF_MIME = "application/pdf"
CHUNK_SIZE = 1024 * 1024


class DrivePublisher:
    """Creates one file per call under the credential held by ``auth``.

    ``auth`` is an ``AuthorizationFlow`` (or ``ServiceAccountFlow``); only its
    ``access_token()`` and ``refresh()`` are used.
    """

    def __init__(self, auth, session=None, timeout=600):
        self.auth = auth
        self.session = session or requests.Session()
        self.timeout = timeout

    def publish(self, pdf_bytes, filename, folder_id=None):
        # Raises NotAuthenticatedError before anything is sent.
        tok = self.auth.access_token()

        meta = {"name": filename}
        if folder_id:
            meta["parents"] = [folder_id]
        debug_event(logger, "drive_upload_meta", name=filename, folder=folder_id, size=len(pdf_bytes))

        resp = self._post(tok, meta, pdf_bytes)
        if resp.status_code == 401:
            debug_event(logger, "drive_upload_retry_needed", status=resp.status_code)
            new = self.auth.refresh()
            resp = self._post(new["access_token"], meta, pdf_bytes)
            debug_event(logger, "drive_upload_retry_response", status=resp.status_code)

        if resp.status_code not in (200, 201):
            logger.warning("drive_upload failed: status=%s body=%s", resp.status_code, resp.text[:300])
            raise UploadError(
                f"drive_error {resp.status_code}: {resp.text[:500]}",
                status=resp.status_code,
            )
        try:
            info = resp.json()
        except ValueError as e:
            raise UploadError("Drive returned an invalid response") from e
        if not isinstance(info, dict) or not info.get("id"):
            raise UploadError("Drive response did not include a file id")

        file_id = info["id"]
        view_link = info.get("webViewLink") or DRIVE_VIEW_URL.format(id=file_id)
        logger.info("drive_upload ok: name=%s id=%s", filename, file_id)
        return {"fileId": file_id, "viewLink": view_link}

    def _post(self, tok, meta, pdf_bytes):
        boundary = "bnd" + uuid.uuid4().hex

        def multipart():
            yield f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode()
            yield json.dumps(meta).encode()
            yield f"\r\n--{boundary}\r\nContent-Type: {PDF_MIME}\r\n\r\n".encode()
            buf = io.BytesIO(pdf_bytes)
            while True:
                chunk = buf.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
            yield f"\r\n--{boundary}--\r\n".encode()

        headers = {
            "Authorization": f"Bearer {tok}",
            "Content-Type": f"multipart/related; boundary={boundary}",
        }
        params = {
            "uploadType": "multipart",
            "fields": "id,webViewLink",
            "supportsAllDrives": "true",
        }
        try:
            resp = self.session.post(
                GOOGLE_DRIVE_UPLOAD_URL,
                headers=headers,
                params=params,
                data=multipart(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.exception("drive_upload transport error: name=%s", meta.get("name"))
            raise UploadError(f"Upload to Drive failed: {e}") from e
        debug_event(logger, "drive_upload_post", status=resp.status_code, name=meta.get("name"))
        return resp

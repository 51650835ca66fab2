"""
Attachment storage module.

Validates document uploads against the MIME allow-list and size ceiling, and
names stored files so that two uploads of "report.pdf" never collide. The
original filename is kept separately for display.
"""

import re
import uuid
from pathlib import Path
from typing import Dict, Optional

from common.constants import ALLOWED_DOCUMENT_TYPES, DOCUMENT_URL_PREFIX, MAX_DOCUMENT_SIZE, UPLOAD_DIR
from common.errors import NotFoundError, ValidationError
from common.protocol_definitions import DocumentRef

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')
_MAX_NAME_LENGTH = 120


class AttachmentStorage:
    """On-disk document store for message attachments."""

    def __init__(self, upload_dir: str = UPLOAD_DIR, max_size: int = MAX_DOCUMENT_SIZE,
                 allowed_types: Optional[Dict[str, str]] = None):
        self.upload_dir = Path(upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.max_size = max_size
        self.allowed_types = allowed_types if allowed_types is not None else ALLOWED_DOCUMENT_TYPES

    def validate(self, filename: str, mimetype: str, size: int):
        """Raise ValidationError unless the offer is acceptable."""
        if not isinstance(filename, str) or not filename.strip():
            raise ValidationError("No document file uploaded")
        if mimetype not in self.allowed_types:
            raise ValidationError("Invalid file type. Only PDF, Word, TXT, Excel, and PowerPoint files are allowed")
        if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
            raise ValidationError("Invalid document size")
        if size > self.max_size:
            raise ValidationError(f"Document too large: {size} bytes (max: {self.max_size} bytes)")

    @staticmethod
    def sanitize_filename(filename: str) -> str:
        """Reduce a client-supplied name to a safe basename."""
        name = Path(filename.replace('\\', '/')).name
        name = _UNSAFE_CHARS.sub('_', name).lstrip('.')
        if not name:
            name = 'document'
        if len(name) > _MAX_NAME_LENGTH:
            stem, dot, ext = name.rpartition('.')
            if dot and len(ext) < 10:
                name = stem[:_MAX_NAME_LENGTH - len(ext) - 1] + '.' + ext
            else:
                name = name[:_MAX_NAME_LENGTH]
        return name

    def allocate(self, original_filename: str) -> str:
        """Pick a fresh stored filename for an upload."""
        return f"{uuid.uuid4().hex}_{self.sanitize_filename(original_filename)}"

    @staticmethod
    def original_name_of(stored_filename: str) -> str:
        _, sep, rest = stored_filename.partition('_')
        return rest if sep and rest else stored_filename

    def path_for(self, stored_filename: str) -> Path:
        """Resolve a stored filename inside the upload directory."""
        if (not isinstance(stored_filename, str) or not stored_filename
                or Path(stored_filename).name != stored_filename
                or stored_filename.startswith('.')):
            raise NotFoundError("Document not found")
        return self.upload_dir / stored_filename

    def exists(self, stored_filename: str) -> bool:
        try:
            return self.path_for(stored_filename).is_file()
        except NotFoundError:
            return False

    def size_of(self, stored_filename: str) -> int:
        path = self.path_for(stored_filename)
        if not path.is_file():
            raise NotFoundError("Document not found")
        return path.stat().st_size

    def discard(self, stored_filename: str):
        """Remove a stored file, e.g. after an incomplete upload."""
        path = self.path_for(stored_filename)
        if path.exists():
            path.unlink()

    def describe(self, stored_filename: str, original_filename: str, mimetype: str) -> DocumentRef:
        """Build the reference attached to a message."""
        return DocumentRef(
            url=f"{DOCUMENT_URL_PREFIX}{stored_filename}",
            filename=stored_filename,
            original_filename=original_filename,
            mimetype=mimetype,
        )

"""File records in Firestore, image bytes on local disk."""
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from toonstudio.core.errors import PersistenceError
from toonstudio.core.logging import setup_logging
from toonstudio.models.files import HistoryPage, StoredFile
from toonstudio.services.image_utils import extension_for_mime, probe_dimensions

logger = setup_logging("storage")

FILES = "files"
REFERENCE_FILES = "reference_files"
CHARACTER_SHEETS = "character_sheets"

MAX_BASE_NAME_LENGTH = 100


def sanitize_base_name(file_name: str, fallback: str = "regenerated") -> str:
    """Strip the extension and replace anything outside [A-Za-z0-9._-]."""
    base = re.sub(r"\.[^/.]+$", "", file_name) or fallback
    return re.sub(r"[^a-zA-Z0-9._-]", "_", base)[:MAX_BASE_NAME_LENGTH]


class FileStore:
    """Storage collaborator for source, reference and regenerated images.

    Records live in the Firestore `files`, `reference_files` and
    `character_sheets` collections. Bytes are written under `images_dir` and
    served by the app at `public_prefix`.
    """

    def __init__(
        self,
        images_dir: Path,
        public_prefix: str = "/images",
        project_id: Optional[str] = None,
        db: Optional[Any] = None,
    ) -> None:
        self.images_dir = Path(images_dir)
        self.public_prefix = public_prefix.rstrip("/")
        self._db = db if db is not None else firestore.Client(project=project_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_file(self, file_id: str) -> StoredFile:
        """Return the `files` record, raising FileNotFoundError if absent."""
        doc = self._db.collection(FILES).document(file_id).get()
        if not doc.exists:
            raise FileNotFoundError(f"File not found: {file_id}")
        return StoredFile(**{**doc.to_dict(), "id": file_id})

    def load_source_file(self, file_id: str) -> StoredFile:
        """Load the image being regenerated.

        Raises:
            FileNotFoundError: No such file.
            ValueError: The file is not an image.
        """
        source = self.get_file(file_id)
        if source.file_type != "image":
            raise ValueError("Only image files can be regenerated")
        logger.info("Loaded source file %s", source.file_name, extra={"file_id": file_id})
        return source

    def load_reference_files(self, file_ids: list[str]) -> list[str]:
        """Resolve reference image paths; unknown ids are skipped.

        Ids are looked up in `reference_files` first, then in `files`.
        """
        paths: list[str] = []
        for file_id in file_ids:
            path = self._lookup_path(REFERENCE_FILES, file_id) or self._lookup_path(FILES, file_id)
            if path is None:
                logger.warning("Reference file not found", extra={"file_id": file_id})
                continue
            paths.append(path)
        return paths

    def load_character_sheets(self, sheet_ids: list[str]) -> list[str]:
        """Resolve character sheet image paths; unknown ids are skipped."""
        paths: list[str] = []
        for sheet_id in sheet_ids:
            path = self._lookup_path(CHARACTER_SHEETS, sheet_id)
            if path is None:
                logger.warning("Character sheet not found", extra={"file_id": sheet_id})
                continue
            paths.append(path)
        return paths

    def _lookup_path(self, collection: str, doc_id: str) -> Optional[str]:
        doc = self._db.collection(collection).document(doc_id).get()
        if not doc.exists:
            return None
        return (doc.to_dict() or {}).get("file_path")

    def local_path(self, file_path: str) -> Optional[Path]:
        """Map a public `/images/...` URL to its file on disk, else None."""
        prefix = f"{self.public_prefix}/"
        if not file_path.startswith(prefix):
            return None
        return self.images_dir / file_path[len(prefix):]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write_bytes(self, data: bytes, directory: str, file_name: str, fallback_name: str) -> str:
        """Write bytes and return the storage path, retrying once with a plain name."""
        storage_path = f"{directory}/{file_name}"
        try:
            target = self.images_dir / storage_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            return storage_path
        except OSError as exc:
            logger.error("Storage write failed for %s: %s", storage_path, exc)

        storage_path = f"{directory}/{fallback_name}"
        try:
            (self.images_dir / storage_path).write_bytes(data)
        except OSError as exc:
            raise PersistenceError(f"Failed to store image: {exc}") from exc
        return storage_path

    def _create_record(
        self,
        data: bytes,
        mime_type: str,
        cut_id: str,
        process_id: str,
        base_name: str,
        is_temp: bool,
        **fields: Any,
    ) -> StoredFile:
        extension = extension_for_mime(mime_type)
        short_id = uuid.uuid4().hex[:8]
        file_name = f"{base_name}-{short_id}{extension}"
        storage_path = self._write_bytes(
            data,
            f"{cut_id}/{process_id}",
            file_name,
            fallback_name=f"regenerated-{short_id}{extension}",
        )

        metadata: dict[str, Any] = dict(fields.pop("metadata", None) or {})
        dimensions = probe_dimensions(data)
        if dimensions is not None:
            metadata["width"], metadata["height"] = dimensions

        record = StoredFile(
            id=uuid.uuid4().hex,
            cut_id=cut_id,
            process_id=process_id,
            file_name=Path(storage_path).name,
            file_path=f"{self.public_prefix}/{storage_path}",
            storage_path=storage_path,
            file_size=len(data),
            file_type="image",
            mime_type=mime_type,
            is_temp=is_temp,
            metadata=metadata,
            **fields,
        )

        try:
            self._db.collection(FILES).document(record.id).set(record.model_dump(exclude={"id"}))
        except Exception as exc:
            logger.error(
                "Failed to insert file record; removing stored bytes",
                exc_info=True,
                extra={"file_id": record.id},
            )
            (self.images_dir / storage_path).unlink(missing_ok=True)
            raise PersistenceError("Failed to save file record") from exc

        logger.info(
            "Stored %s file %s (%d bytes)",
            "temporary" if is_temp else "permanent",
            storage_path,
            len(data),
            extra={"file_id": record.id},
        )
        return record

    def save_temp_file(
        self,
        data: bytes,
        mime_type: str,
        source: StoredFile,
        prompt: str,
        created_by: Optional[str] = None,
        style_id: Optional[str] = None,
    ) -> StoredFile:
        """Store a generated image as a temporary file next to its source."""
        metadata = {"style_id": style_id} if style_id else {}
        return self._create_record(
            data,
            mime_type,
            cut_id=source.cut_id,
            process_id=source.process_id,
            base_name=sanitize_base_name(source.file_name),
            is_temp=True,
            description=f"AI regeneration: {source.file_name}",
            prompt=prompt,
            created_by=created_by or source.created_by,
            source_file_id=source.id,
            metadata=metadata,
        )

    def save_uploaded_image(
        self,
        data: bytes,
        mime_type: str,
        cut_id: str,
        process_id: str,
        file_name: Optional[str] = None,
        description: Optional[str] = None,
        prompt: Optional[str] = None,
        source_file_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StoredFile:
        """Store raw image bytes directly as a permanent file."""
        return self._create_record(
            data,
            mime_type,
            cut_id=cut_id,
            process_id=process_id,
            base_name=sanitize_base_name(file_name or "", fallback="regenerated"),
            is_temp=False,
            description=description or f"AI regeneration: {file_name or 'image'}",
            prompt=prompt,
            created_by=created_by,
            source_file_id=source_file_id,
        )

    def promote_temp_file(
        self,
        file_id: str,
        process_id: str,
        file_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> StoredFile:
        """Turn a temporary file into a permanent one attributed to `process_id`.

        The bytes stay where they are; only the record changes.

        Raises:
            FileNotFoundError: No such file.
            ValueError: The file is already permanent.
        """
        current = self.get_file(file_id)
        if not current.is_temp:
            raise ValueError("File is already saved as a permanent file")

        updates: dict[str, Any] = {"is_temp": False, "process_id": process_id}
        if file_name:
            updates["file_name"] = file_name
        if description is not None:
            updates["description"] = description

        self._db.collection(FILES).document(file_id).update(updates)
        logger.info("Promoted temporary file", extra={"file_id": file_id})
        return current.model_copy(update=updates)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def list_history(
        self,
        source_file_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        before: Optional[datetime] = None,
    ) -> HistoryPage:
        """Return one page of AI generated files (those with a prompt), newest first.

        Filtering, ordering and paging all run in Firestore. `total` counts
        every generated file matching the source and user filters, ignoring
        `before` and the page window.
        """
        query = self._db.collection(FILES).where(filter=FieldFilter("prompt", "!=", None))
        if source_file_id:
            query = query.where(filter=FieldFilter("source_file_id", "==", source_file_id))
        if user_id:
            query = query.where(filter=FieldFilter("created_by", "==", user_id))

        total = self._count(query)

        if before is not None:
            query = query.where(filter=FieldFilter("created_at", "<", before))
        page = query.order_by("created_at", direction=firestore.Query.DESCENDING).offset(offset).limit(limit)

        history = [StoredFile(**{**doc.to_dict(), "id": doc.id}) for doc in page.stream()]
        return HistoryPage(history=history, total=total)

    @staticmethod
    def _count(query: Any) -> int:
        try:
            results = query.count().get()
            return int(results[0][0].value)
        except Exception:
            logger.warning("History count query failed", exc_info=True)
            return 0

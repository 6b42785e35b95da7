"""Media library synchronization.

Copies one file from the source media library to the target: download
the bytes, make sure the folder exists on the target, upload (replacing
the matched target file when there is one).

Folder creation is best-effort.  When a folder cannot be created the
failure is logged as ``FolderCreationFailed`` and the file is uploaded to
the library root instead of failing the item.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import FolderCreationFailed

logger = logging.getLogger(__name__)


def folder_name_paths(folders: list[dict]) -> dict[str, str]:
    """Map each folder's ``pathId`` path (``/1/3``) to its name path.

    Strapi stores a folder's location as a chain of ``pathId`` values;
    names are what stays stable between instances.
    """
    names = {str(f.get("pathId")): f.get("name", "") for f in folders}
    result: dict[str, str] = {}
    for folder in folders:
        path = folder.get("path") or ""
        parts = [p for p in path.split("/") if p]
        result[path] = "/" + "/".join(names.get(p, p) for p in parts)
    return result


class FileSyncProcessor:
    """Sync media files from a source client to a target client.

    Args:
        source_client: Client of the source instance.
        target_client: Client of the target instance.
    """

    def __init__(self, source_client: Any, target_client: Any) -> None:
        self.source = source_client
        self.target = target_client
        self._source_names: dict[str, str] | None = None
        self._target_ids: dict[str, int] | None = None

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def _load_folders(self) -> tuple[dict[str, str], dict[str, int]]:
        if self._source_names is None:
            self._source_names = folder_name_paths(self.source.get_folders())
        if self._target_ids is None:
            target_folders = self.target.get_folders()
            by_path = folder_name_paths(target_folders)
            self._target_ids = {
                by_path[f.get("path") or ""]: f["id"]
                for f in target_folders
                if "id" in f
            }
        return self._source_names, self._target_ids

    def source_folder_name_path(self, file_raw: dict) -> str | None:
        """Name path of the folder holding a source file, if any."""
        folder_path = file_raw.get("folderPath")
        if not folder_path or folder_path == "/":
            return None
        source_names, _ = self._load_folders()
        return source_names.get(folder_path)

    def ensure_folders(self, name_path: str | None) -> int | None:
        """Create the folders of ``name_path`` on the target, parents first.

        Returns:
            Target id of the deepest folder, or ``None`` when there is no
            folder or it could not be created.
        """
        if not name_path or name_path == "/":
            return None
        _, target_ids = self._load_folders()

        parent_id: int | None = None
        prefix = ""
        for name in [p for p in name_path.split("/") if p]:
            prefix = f"{prefix}/{name}"
            existing = target_ids.get(prefix)
            if existing is not None:
                parent_id = existing
                continue
            try:
                created = self.target.create_folder(name, parent_id)
            except Exception as exc:
                error = FolderCreationFailed(
                    f"Could not create folder {prefix!r} on target: {exc}"
                )
                logger.warning("%s", error)
                return None
            parent_id = created.get("id")
            if parent_id is not None:
                target_ids[prefix] = parent_id
            logger.info("Created target folder %s", prefix)
        return parent_id

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def sync_file(
        self, source_file: dict, target_file: dict | None = None
    ) -> dict:
        """Copy ``source_file`` to the target.

        Args:
            source_file: Raw source file metadata (needs ``url``).
            target_file: Matched target file to replace, if any.

        Returns:
            The target file object returned by the upload.
        """
        content = self.source.download_file(source_file["url"])
        folder_id = self.ensure_folders(
            self.source_folder_name_path(source_file)
        )
        file_info = {
            "name": source_file.get("name"),
            "alternativeText": source_file.get("alternativeText"),
            "caption": source_file.get("caption"),
        }
        if folder_id is not None:
            file_info["folder"] = folder_id
        return self.target.upload_file(
            content,
            file_name=source_file.get("name") or "file",
            mime=source_file.get("mime"),
            file_info=file_info,
            file_id=target_file.get("id") if target_file else None,
        )

    def delete_file(self, target_file: dict) -> None:
        self.target.delete_file(target_file["id"])

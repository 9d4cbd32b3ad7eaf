# AppStack - Package Archive Reader

import json
import logging
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError

from appstack.core.errors import ArchiveError
from appstack.core.models import PackageManifest

logger = logging.getLogger("appstack.archive")

MANIFEST_NAME = "manifest.json"
PACKAGE_SUFFIX = ".lpkg"


class ZipArchiveReader:
    """Reads ``.lpkg`` packages, which are zip files with a root manifest."""

    def read_manifest(self, archive_ref: Union[str, Path]) -> Optional[PackageManifest]:
        """Return the package manifest, or None if the archive has none."""
        try:
            with zipfile.ZipFile(archive_ref) as zf:
                try:
                    raw = zf.read(MANIFEST_NAME)
                except KeyError:
                    return None
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Cannot read package {archive_ref}: {e}") from e

        try:
            return PackageManifest.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise ArchiveError(f"Invalid manifest in {archive_ref}: {e}") from e

    def extract(self, archive_ref: Union[str, Path], dest_dir: Union[str, Path]) -> None:
        """Extract every member into ``dest_dir``.

        Members whose resolved path would land outside ``dest_dir`` are
        rejected before anything is written.
        """
        dest = Path(dest_dir).resolve()
        try:
            with zipfile.ZipFile(archive_ref) as zf:
                for member in zf.namelist():
                    target = (dest / member).resolve()
                    if target != dest and dest not in target.parents:
                        raise ArchiveError(f"Unsafe path in package: {member}")
                zf.extractall(dest)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Cannot extract {archive_ref}: {e}") from e
        logger.info("Extracted %s into %s", Path(archive_ref).name, dest)

    def list_packages(self, packages_dir: Path) -> List[Tuple[str, PackageManifest]]:
        """List ``(filename, manifest)`` for every readable package."""
        if not packages_dir.is_dir():
            return []
        packages = []
        for path in sorted(packages_dir.glob(f"*{PACKAGE_SUFFIX}")):
            try:
                manifest = self.read_manifest(path)
            except ArchiveError as e:
                logger.warning("Skipping %s: %s", path.name, e)
                continue
            if manifest is not None:
                packages.append((path.name, manifest))
        return packages

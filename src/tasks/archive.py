import logging
import os
from pathlib import Path

from zipstream import ZipStream, ZIP_DEFLATED

logger = logging.getLogger(__name__)


def build_archive(work_dir: Path, archive_path: Path) -> Path:
    """
    Zip the full contents of ``work_dir`` into ``archive_path``.

    Paths inside the archive are relative to ``work_dir``. The zip is streamed
    to a ``.part`` file and renamed into place, so ``archive_path`` only ever
    holds a finished archive.
    """
    if not work_dir.is_dir():
        raise FileNotFoundError(f"export working directory does not exist: {work_dir}")

    zs = ZipStream(compress_type=ZIP_DEFLATED, compress_level=9)
    files = sorted(p for p in work_dir.rglob("*") if p.is_file())
    for path in files:
        zs.add_path(str(path), arcname=path.relative_to(work_dir).as_posix())

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = archive_path.with_name(archive_path.name + ".part")
    try:
        with open(tmp_path, "wb") as f:
            for chunk in zs:
                f.write(chunk)
        os.replace(tmp_path, archive_path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info(f"📦 Archived {len(files)} file(s) from {work_dir} into {archive_path}")
    return archive_path

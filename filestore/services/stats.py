from sqlalchemy import func
from sqlmodel import Session, select

from filestore.models import File


def fetch_storage_totals(session: Session) -> dict:
    total_files = session.exec(select(func.count(File.file_id))).one()
    total_bytes = session.exec(select(func.coalesce(func.sum(File.size), 0))).one()

    by_mode = {}
    stmt = select(File.storage_mode, func.count(File.file_id), func.coalesce(func.sum(File.size), 0)).group_by(
        File.storage_mode
    )
    for mode, count, size in session.exec(stmt).all():
        by_mode[getattr(mode, "value", mode)] = {"files": int(count or 0), "bytes": int(size or 0)}

    return {
        "total_files": int(total_files or 0),
        "total_bytes": int(total_bytes or 0),
        "by_mode": by_mode,
    }

# ==============================================================================
# FILE: core/pruner.py
# PURPOSE: Drops stale sessions from a snapshot for the short dashboard window.
# ==============================================================================
import dataclasses

from .data_models import DASHBOARD_CACHE_WINDOW_MS, ConnectionSnapshot, parse_timestamp


def prune(snapshot: ConnectionSnapshot, now: float, window_ms: float = DASHBOARD_CACHE_WINDOW_MS) -> ConnectionSnapshot:
    """
    Keeps details whose lastSeen falls inside [now - window_ms, now] and
    rebuilds every total from the survivors. Details without a timestamp
    always survive; a group that arrived without details is kept as-is.
    """
    cutoff = now - window_ms
    groups = []
    upload_total = 0
    download_total = 0

    for group in snapshot.groups:
        if not group.details:
            groups.append(group)
            upload_total += group.upload
            download_total += group.download
            continue

        survivors = []
        for detail in group.details:
            ts = parse_timestamp(detail.last_seen)
            if not ts or cutoff <= ts <= now:
                survivors.append(detail)
        if not survivors:
            continue

        upload = sum(d.upload for d in survivors)
        download = sum(d.download for d in survivors)
        groups.append(dataclasses.replace(
            group,
            details=survivors,
            upload=upload,
            download=download,
            connection_count=len(survivors),
        ))
        upload_total += upload
        download_total += download

    return ConnectionSnapshot(upload_total=upload_total, download_total=download_total, groups=groups)

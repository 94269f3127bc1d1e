from connscope.core.data_models import format_timestamp

# 2024-05-01T10:00:00Z
T0 = 1714557600000


def iso(ms):
    return format_timestamp(ms)


def detail(detail_id, upload=0, download=0, last_seen=None, source="10.0.0.1", host="example.com", **meta):
    d = {
        "id": detail_id,
        "upload": upload,
        "download": download,
        "metadata": {"sourceIP": source, "host": host, **meta},
    }
    if last_seen is not None:
        d["lastSeen"] = last_seen
    return d


def group(group_id, details, **fields):
    g = {"id": group_id, "details": details}
    g.update(fields)
    return g


def payload(groups, upload_total=0, download_total=0):
    return {"uploadTotal": upload_total, "downloadTotal": download_total, "connections": groups}

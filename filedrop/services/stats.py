from filedrop.storage import list_stored_files


def fetch_storage_totals(upload_dir: str) -> dict[str, int]:
    files = list_stored_files(upload_dir)

    return {
        "total_files": len(files),
        "total_bytes": sum(f.size for f in files),
    }

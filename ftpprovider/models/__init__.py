from ftpprovider.models.domain import FileEntry, FileKind, TransferProgress

__all__ = ["FileEntry", "FileKind", "TransferProgress"]

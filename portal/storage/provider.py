from typing import BinaryIO, Iterator


class StorageProvider:
    def save(self, src: BinaryIO | bytes, key: str) -> int:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


def iter_file(fh: BinaryIO, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    """Yield a stored file in chunks and close it when exhausted."""
    with fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            yield chunk

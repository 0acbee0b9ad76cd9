"""
Archive pipeline: tar -> compress -> encrypt -> file, in a single pass

Each stage is a writable file object wrapping the next one, so nothing
unencrypted ever reaches the disk and every stage can be exercised against
an in-memory buffer.
"""
import gzip
import io
import os
import subprocess
import tarfile
import threading
import zlib
from pathlib import Path
from typing import BinaryIO, Optional

from .crypto import CHUNK_SIZE, EncryptingWriter
from .exceptions import PipelineError
from .logging_config import get_logger, LogOperation


class PigzWriter(io.RawIOBase):
    """Compress through an external ``pigz`` process connected by OS pipes"""

    def __init__(self, downstream: BinaryIO, level: int = 1, pigz_path: str = "pigz"):
        super().__init__()
        self._downstream = downstream
        self._error: Optional[BaseException] = None
        try:
            self._proc = subprocess.Popen(
                [pigz_path, f"-{level}", "-c"],
                stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise PipelineError(f"Cannot start {pigz_path}: {e}") from e
        self._pump = threading.Thread(target=self._copy_output, name="pigz-pump", daemon=True)
        self._pump.start()

    def _copy_output(self) -> None:
        try:
            for chunk in iter(lambda: self._proc.stdout.read(CHUNK_SIZE), b""):
                self._downstream.write(chunk)
        except Exception as e:
            self._error = e
            # Unblock the writer side; pigz gets SIGPIPE
            self._proc.stdout.close()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self.closed:
            raise ValueError("write to closed PigzWriter")
        try:
            self._proc.stdin.write(data)
        except (BrokenPipeError, OSError) as e:
            raise PipelineError(f"pigz stopped accepting data: {self._error or e}") from e
        return len(data)

    def abort(self) -> None:
        """Kill pigz and drop whatever it still had buffered"""
        if self.closed:
            return
        self._proc.kill()
        self._proc.wait()
        self._pump.join()
        super().close()

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._proc.stdin.close()
        except BrokenPipeError:
            pass
        self._pump.join()
        stderr = self._proc.stderr.read().decode(errors="replace").strip()
        code = self._proc.wait()
        super().close()
        if self._error is not None:
            raise PipelineError(f"Writing compressed data failed: {self._error}") from self._error
        if code != 0:
            raise PipelineError(f"pigz exited with status {code}: {stderr}")


class ArchivePipeline:
    """Builds one encrypted, compressed tar archive from a folder"""

    def __init__(self, passphrase: bytes, compressor: str = "gzip", compression_level: int = 1,
                 key_derivation: str = "pbkdf2", pigz_path: str = "pigz"):
        self.passphrase = passphrase
        self.compressor = compressor
        self.compression_level = compression_level
        self.key_derivation = key_derivation
        self.pigz_path = pigz_path
        self.logger = get_logger("vmbackup.archive")

    @classmethod
    def from_settings(cls, config, passphrase: bytes) -> 'ArchivePipeline':
        return cls(
            passphrase,
            compressor=config.compressor,
            compression_level=config.compression_level,
            key_derivation=config.key_derivation,
        )

    def open_encryptor(self, downstream: BinaryIO) -> EncryptingWriter:
        return EncryptingWriter(downstream, self.passphrase, self.key_derivation)

    def open_compressor(self, downstream: BinaryIO):
        if self.compressor == "pigz":
            return PigzWriter(downstream, self.compression_level, self.pigz_path)
        return gzip.GzipFile(fileobj=downstream, mode="wb",
                             compresslevel=self.compression_level, mtime=0)

    def write_stream(self, source_dir: Path, fileobj: BinaryIO) -> None:
        """Stream ``source_dir`` through every stage into ``fileobj``"""
        source_dir = Path(source_dir)
        encryptor = self.open_encryptor(fileobj)
        compressor = None
        try:
            compressor = self.open_compressor(encryptor)
            with tarfile.open(fileobj=compressor, mode="w|") as tar:
                tar.add(str(source_dir), arcname=source_dir.name)
            compressor.close()
            encryptor.close()
        except BaseException:
            if compressor is not None:
                self._discard(compressor)
            encryptor.abort()
            raise

    @staticmethod
    def _discard(compressor) -> None:
        if isinstance(compressor, PigzWriter):
            compressor.abort()
            return
        # GzipFile cannot be aborted; close it now so it never flushes later.
        # The caller re-raises the error that got us here.
        try:
            compressor.close()
        except (OSError, ValueError, PipelineError):
            pass

    def build(self, source_dir: Path, destination: Path) -> int:
        """Write the archive to ``destination`` and return its size in bytes.

        Data goes to ``<destination>.partial`` first and is renamed only once
        complete, so a failed run never leaves something that looks like a
        finished archive.
        """
        destination = Path(destination)
        partial = destination.with_name(destination.name + ".partial")
        try:
            with LogOperation(self.logger, "build_archive", source=str(source_dir),
                              destination=str(destination), compressor=self.compressor):
                with open(partial, "wb") as out:
                    self.write_stream(source_dir, out)
                    out.flush()
                    os.fsync(out.fileno())
                os.replace(partial, destination)
        except BaseException as e:
            partial.unlink(missing_ok=True)
            if isinstance(e, (OSError, tarfile.TarError, zlib.error)):
                raise PipelineError(f"Archiving {source_dir} failed: {e}",
                                    {"destination": str(destination)}) from e
            raise
        return destination.stat().st_size
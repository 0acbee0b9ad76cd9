"""
Tests for the archive pipeline and its encryption stage
"""
import gzip
import io
import os
import shutil
import subprocess
import tarfile

import pytest

from vmbackup.archive import ArchivePipeline
from vmbackup.crypto import (MAGIC, EncryptingWriter, check_secret_file, decrypt_stream,
                             derive_key_iv, read_passphrase)
from vmbackup.exceptions import PipelineError, PreconditionError

PASSPHRASE = b"correct horse battery staple"


@pytest.fixture
def vm_folder(tmp_path):
    folder = tmp_path / "web01"
    (folder / "Logs").mkdir(parents=True)
    (folder / "web01.vbox").write_text("<VirtualBox/>")
    (folder / "web01.vdi").write_bytes(os.urandom(256 * 1024))
    (folder / "Logs" / "VBox.log").write_text("boot\n" * 100)
    return folder


def unpack(archive_bytes, passphrase=PASSPHRASE, key_derivation="pbkdf2"):
    """Decrypt, decompress and untar into {name: bytes}"""
    compressed = io.BytesIO()
    decrypt_stream(io.BytesIO(archive_bytes), compressed, passphrase, key_derivation)
    tar_bytes = gzip.decompress(compressed.getvalue())
    contents = {}
    with tarfile.open(fileobj=io.BytesIO(tar_bytes), mode="r:") as tar:
        for member in tar.getmembers():
            if member.isfile():
                contents[member.name] = tar.extractfile(member).read()
    return contents


def folder_contents(folder):
    return {
        f"{folder.name}/{path.relative_to(folder).as_posix()}": path.read_bytes()
        for path in folder.rglob("*") if path.is_file()
    }


class TestSecretFile:
    """Test cases for passphrase file handling"""

    def test_owner_only_file_is_accepted(self, secret_file):
        """Test a passfile readable only by its owner"""
        check_secret_file(secret_file)
        assert read_passphrase(secret_file) == PASSPHRASE

    def test_world_readable_file_is_rejected(self, secret_file):
        """Test passfile permission check rejects group/other access"""
        os.chmod(secret_file, 0o644)

        with pytest.raises(PreconditionError, match="unsafe permissions"):
            check_secret_file(secret_file)

    def test_missing_file(self, tmp_path):
        """Test missing passfile"""
        with pytest.raises(PreconditionError, match="missing"):
            read_passphrase(tmp_path / "nope")

    def test_empty_passphrase(self, tmp_path):
        """Test passfile with an empty first line"""
        path = tmp_path / "empty"
        path.write_text("\n")
        os.chmod(path, 0o600)

        with pytest.raises(PreconditionError, match="empty"):
            read_passphrase(path)


class TestEncryption:
    """Test cases for the OpenSSL-compatible encryption stage"""

    @pytest.mark.parametrize("key_derivation", ["pbkdf2", "evp"])
    def test_round_trip(self, key_derivation):
        """Test encrypting then decrypting a stream"""
        payload = os.urandom(100_000)
        out = io.BytesIO()
        writer = EncryptingWriter(out, PASSPHRASE, key_derivation)
        writer.write(payload[:33])
        writer.write(payload[33:])
        writer.close()

        encrypted = out.getvalue()
        assert encrypted.startswith(MAGIC)
        assert (len(encrypted) - 16) % 16 == 0

        plain = io.BytesIO()
        decrypt_stream(io.BytesIO(encrypted), plain, PASSPHRASE, key_derivation)
        assert plain.getvalue() == payload

    def test_derivations_differ(self):
        """Test pbkdf2 and evp derive different keys"""
        salt = b"\x01" * 8
        assert derive_key_iv(PASSPHRASE, salt, "pbkdf2") != derive_key_iv(PASSPHRASE, salt, "evp")

    def test_unknown_derivation(self):
        """Test unknown key derivation name"""
        with pytest.raises(ValueError):
            derive_key_iv(PASSPHRASE, b"\x00" * 8, "md5")

    def test_wrong_passphrase_does_not_reveal_data(self):
        """Test decrypting with the wrong passphrase"""
        payload = b"secret disk contents" * 100
        out = io.BytesIO()
        with EncryptingWriter(out, PASSPHRASE) as writer:
            writer.write(payload)

        plain = io.BytesIO()
        try:
            decrypt_stream(io.BytesIO(out.getvalue()), plain, b"wrong passphrase")
        except PipelineError:
            return
        assert plain.getvalue() != payload

    def test_rejects_non_openssl_input(self):
        """Test decrypting data without the Salted__ header"""
        with pytest.raises(PipelineError, match="salted"):
            decrypt_stream(io.BytesIO(b"plain tar data"), io.BytesIO(), PASSPHRASE)

    def test_write_after_close(self):
        """Test writing to a closed encrypting writer"""
        writer = EncryptingWriter(io.BytesIO(), PASSPHRASE)
        writer.close()

        with pytest.raises(ValueError):
            writer.write(b"late")


class TestArchivePipeline:
    """Test cases for tar -> compress -> encrypt archives"""

    def test_build_reproduces_folder(self, vm_folder, tmp_path):
        """Test archive build and extraction of a VM folder"""
        destination = tmp_path / "export" / "web01.tgz.enc"
        destination.parent.mkdir()

        size = ArchivePipeline(PASSPHRASE, compressor="gzip").build(vm_folder, destination)

        assert size == destination.stat().st_size
        assert not destination.with_name("web01.tgz.enc.partial").exists()
        assert unpack(destination.read_bytes()) == folder_contents(vm_folder)

    def test_build_with_evp_key_derivation(self, vm_folder, tmp_path):
        """Test archive build with legacy key derivation"""
        destination = tmp_path / "web01.tgz.enc"

        ArchivePipeline(PASSPHRASE, compressor="gzip", key_derivation="evp").build(vm_folder, destination)

        assert unpack(destination.read_bytes(), key_derivation="evp") == folder_contents(vm_folder)

    @pytest.mark.skipif(shutil.which("pigz") is None, reason="pigz not installed")
    def test_build_with_pigz(self, vm_folder, tmp_path):
        """Test archive build through pigz"""
        destination = tmp_path / "web01.tgz.enc"

        ArchivePipeline(PASSPHRASE, compressor="pigz").build(vm_folder, destination)

        assert unpack(destination.read_bytes()) == folder_contents(vm_folder)

    def test_missing_pigz_binary(self, vm_folder, tmp_path):
        """Test pipeline error when pigz is not installed"""
        destination = tmp_path / "web01.tgz.enc"
        pipeline = ArchivePipeline(PASSPHRASE, compressor="pigz", pigz_path="/nonexistent/pigz")

        with pytest.raises(PipelineError, match="Cannot start"):
            pipeline.build(vm_folder, destination)

        assert not destination.exists()
        assert not destination.with_name("web01.tgz.enc.partial").exists()

    def test_failure_leaves_no_partial_archive(self, tmp_path):
        """Test failed build cleanup"""
        destination = tmp_path / "web01.tgz.enc"

        with pytest.raises(PipelineError):
            ArchivePipeline(PASSPHRASE, compressor="gzip").build(tmp_path / "missing", destination)

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")
    def test_openssl_can_decrypt(self, vm_folder, tmp_path, secret_file):
        """Test the openssl command line can decrypt an archive"""
        destination = tmp_path / "web01.tgz.enc"
        ArchivePipeline(read_passphrase(secret_file), compressor="gzip").build(vm_folder, destination)

        result = subprocess.run(
            ["openssl", "enc", "-d", "-aes256", "-pbkdf2", "-pass", f"file:{secret_file}",
             "-in", str(destination)],
            capture_output=True,
        )

        assert result.returncode == 0, result.stderr
        with tarfile.open(fileobj=io.BytesIO(gzip.decompress(result.stdout)), mode="r:") as tar:
            assert "web01/web01.vbox" in tar.getnames()

import datetime
import os
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from trust_config import KEYSTORE_NAME, PEM_BUNDLE_NAME, TrustConfig
from trust_deploy import StoreDeployer, extract_pem_bundle
from trust_ops import TrustManager


def _name(cn):
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test PKI"),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


class CertFactory:
    """Create throwaway certificates and write them to disk."""

    def __init__(self):
        self.keys = {}

    def root(self, cn):
        key = ec.generate_private_key(ec.SECP256R1())
        self.keys[cn] = key
        return self._build(cn, cn, key.public_key(), key, ca=True)

    def issued(self, cn, issuer_cn):
        key = ec.generate_private_key(ec.SECP256R1())
        self.keys[cn] = key
        return self._build(cn, issuer_cn, key.public_key(), self.keys[issuer_cn], ca=True)

    def _build(self, cn, issuer_cn, public_key, signing_key, ca):
        now = datetime.datetime.now(datetime.timezone.utc)
        return (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(_name(issuer_cn))
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
            .sign(signing_key, hashes.SHA256())
        )

    @staticmethod
    def write(cert, path, der=False):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        encoding = serialization.Encoding.DER if der else serialization.Encoding.PEM
        path.write_bytes(cert.public_bytes(encoding))
        return path


@pytest.fixture
def certs():
    return CertFactory()


@pytest.fixture
def config(tmp_path):
    return TrustConfig(
        store_path=tmp_path / "cache" / "ca-certs",
        local_source_path=tmp_path / "etc" / "ca-certs",
        vendor_source_path=tmp_path / "usr" / "ca-certs",
        keytool=str(tmp_path / "no-keytool"),
    )


def fake_keystore(anchors_dir, output):
    output.write_bytes(b"keystore:" + ",".join(sorted(p.name for p in anchors_dir.iterdir())).encode())


@pytest.fixture
def deployer(config):
    return StoreDeployer(
        config,
        extractors=[(KEYSTORE_NAME, fake_keystore), (PEM_BUNDLE_NAME, extract_pem_bundle)],
    )


@pytest.fixture
def manager(config, deployer):
    return TrustManager(config, deployer=deployer)


def _snapshot(directory):
    """Map relative path -> file bytes or symlink target for a whole tree."""
    result = {}
    for path in sorted(Path(directory).rglob("*")):
        rel = str(path.relative_to(directory))
        if path.is_symlink():
            result[rel] = ("link", os.readlink(path))
        elif path.is_file():
            result[rel] = path.read_bytes()
        else:
            result[rel] = "dir"
    return result


@pytest.fixture
def snapshot():
    return _snapshot

"""Configuration for the trust-store tools.

A single TrustConfig is built at process start and handed to every
component; nothing else reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_STORE_PATH = Path("/var/cache/ca-certs")
DEFAULT_LOCAL_SOURCE_PATH = Path("/etc/ca-certs")
DEFAULT_VENDOR_SOURCE_PATH = Path("/usr/share/ca-certs")
DEFAULT_KEYSTORE_PASSWORD = "changeit"

ENV_STORE_PATH = "CA_TRUST_STORE_PATH"
ENV_LOCAL_SOURCE_PATH = "CA_TRUST_LOCAL_SOURCE_PATH"
ENV_VENDOR_SOURCE_PATH = "CA_TRUST_VENDOR_SOURCE_PATH"
ENV_KEYTOOL = "CA_TRUST_KEYTOOL"
ENV_KEYSTORE_PASSWORD = "CA_TRUST_KEYSTORE_PASSWORD"

KEYSTORE_NAME = "ca-roots.keystore"
PEM_BUNDLE_NAME = "ca-roots.pem"


@dataclass(frozen=True)
class TrustConfig:
    store_path: Path = DEFAULT_STORE_PATH
    local_source_path: Path = DEFAULT_LOCAL_SOURCE_PATH
    vendor_source_path: Path = DEFAULT_VENDOR_SOURCE_PATH
    keytool: str = "keytool"
    keystore_password: str = DEFAULT_KEYSTORE_PASSWORD

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "TrustConfig":
        """Build a config from environment variables, then apply overrides.

        Overrides whose value is None are ignored, so argparse results can
        be passed straight through.
        """
        env = os.environ if environ is None else environ
        config = cls(
            store_path=Path(env.get(ENV_STORE_PATH) or DEFAULT_STORE_PATH),
            local_source_path=Path(env.get(ENV_LOCAL_SOURCE_PATH) or DEFAULT_LOCAL_SOURCE_PATH),
            vendor_source_path=Path(env.get(ENV_VENDOR_SOURCE_PATH) or DEFAULT_VENDOR_SOURCE_PATH),
            keytool=env.get(ENV_KEYTOOL) or "keytool",
            keystore_password=env.get(ENV_KEYSTORE_PASSWORD) or DEFAULT_KEYSTORE_PASSWORD,
        )
        given = {k: v for k, v in overrides.items() if v is not None}
        for key in ("store_path", "local_source_path", "vendor_source_path"):
            if key in given:
                given[key] = Path(given[key])
        return replace(config, **given)

    @property
    def vendor_trusted(self) -> Path:
        return self.vendor_source_path / "trusted"

    @property
    def local_trusted(self) -> Path:
        return self.local_source_path / "trusted"

    @property
    def local_distrusted(self) -> Path:
        return self.local_source_path / "distrusted"

    @property
    def anchors_dir(self) -> Path:
        return self.store_path / "anchors"

    @property
    def compat_dir(self) -> Path:
        return self.store_path / "compat"

    @property
    def lock_path(self) -> Path:
        return self.store_path.with_name(self.store_path.name + ".lock")

    @property
    def store_is_default(self) -> bool:
        return self.store_path == DEFAULT_STORE_PATH

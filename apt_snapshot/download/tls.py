# SPDX-License-Identifer: GPL-3.0-or-later

import ssl
from dataclasses import dataclass


@dataclass
class TLSPolicy:
    """Client side TLS settings shared by every upstream connection"""

    VERSIONS = {
        "1.2": ssl.TLSVersion.TLSv1_2,
        "1.3": ssl.TLSVersion.TLSv1_3,
    }

    verify: bool = True
    ca_certificate: str | None = None
    certificate: str | None = None
    private_key: str | None = None
    min_version: str | None = None
    max_version: str | None = None
    ciphers: str | None = None

    def __post_init__(self):
        for name in ("min_version", "max_version"):
            value = getattr(self, name)
            if value and value not in self.VERSIONS:
                raise ValueError(
                    f"Unsupported TLS version `{value}` for {name}. Supported"
                    f" versions: {', '.join(self.VERSIONS)}"
                )

        if (
            self.min_version
            and self.max_version
            and self.VERSIONS[self.min_version] > self.VERSIONS[self.max_version]
        ):
            raise ValueError(
                f"TLS minimum version {self.min_version} is greater than maximum"
                f" version {self.max_version}"
            )

        if self.private_key and not self.certificate:
            raise ValueError("TLS private key is configured without a certificate")

    def ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self.ca_certificate or None)

        if not self.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if self.min_version:
            context.minimum_version = self.VERSIONS[self.min_version]

        if self.max_version:
            context.maximum_version = self.VERSIONS[self.max_version]

        if self.ciphers:
            try:
                context.set_ciphers(self.ciphers)
            except ssl.SSLError as ex:
                raise ValueError(f"Invalid TLS cipher list: {self.ciphers}") from ex

        if self.certificate:
            # A certificate without a key must be a combined PEM file
            context.load_cert_chain(self.certificate, self.private_key or None)

        return context

# SPDX-License-Identifer: GPL-3.0-or-later

from dataclasses import dataclass
from pathlib import PurePath
from urllib import parse


@dataclass
class URL:
    scheme: str
    netloc: str
    path: str
    query: str
    hostname: str | None
    port: int | None
    username: str | None
    password: str | None

    @classmethod
    def from_string(cls, url_string: str):
        url = parse.urlparse(url_string)
        if not url.scheme or not url.netloc:
            raise ValueError(f"Not an absolute URL: {url_string}")

        return cls(
            scheme=url.scheme,
            netloc=url.netloc,
            path=url.path.rstrip("/"),
            query=url.query,
            hostname=url.hostname,
            port=url.port,
            username=url.username,
            password=url.password,
        )

    def get_host(self):
        _, _, host = self.netloc.rpartition("@")
        return host

    @property
    def connection_key(self) -> str:
        """Identity of the upstream server used for connection limits"""
        return f"{self.scheme}://{self.get_host()}"

    def without_auth(self):
        return parse.urlunparse(
            (self.scheme, self.get_host(), self.path, "", self.query, "")
        )

    def for_path(self, path: PurePath | str) -> str:
        str_path = str(path).lstrip("/")

        return parse.urlunparse(
            (
                self.scheme,
                self.get_host(),
                f"{self.path}/{str_path}",
                "",
                self.query,
                "",
            )
        )

    def __str__(self) -> str:
        return self.without_auth()

    def __hash__(self) -> int:
        return hash(self.without_auth())

    def __eq__(self, __value: object) -> bool:
        if not isinstance(__value, URL):
            return False

        return self.without_auth() == __value.without_auth()

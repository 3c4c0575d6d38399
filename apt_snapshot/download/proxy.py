# SPDX-License-Identifer: GPL-3.0-or-later

from dataclasses import dataclass
from urllib import parse


@dataclass
class Proxy:
    use_proxy: bool = False
    http_proxy: str | None = None
    https_proxy: str | None = None
    username: str | None = None
    password: str | None = None

    def for_scheme(self, scheme: str) -> str | None:
        if not self.use_proxy:
            return None

        match scheme:
            case "http://":
                proxy = self.http_proxy
            case "https://":
                proxy = self.https_proxy or self.http_proxy
            case _:
                proxy = None

        return self._with_auth(proxy) if proxy else None

    def _with_auth(self, proxy: str) -> str:
        if "://" not in proxy:
            proxy = f"http://{proxy}"

        url = parse.urlparse(proxy)
        if not self.username:
            return parse.urlunparse(url)

        auth = parse.quote(self.username, safe="")
        if self.password:
            auth = f"{auth}:{parse.quote(self.password, safe='')}"

        return parse.urlunparse(url._replace(netloc=f"{auth}@{url.netloc}"))

# SPDX-License-Identifer: GPL-3.0-or-later

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from string import Template

from .download import URL, DownloaderSettings, Proxy, TLSPolicy
from .filter import PackageFilter
from .layout import validate_mirror_id
from .logs import LoggerFactory
from .release import Keyring
from .snapshot import DEFAULT_NAME_FORMAT, RetentionPolicy, parse_duration
from .transfer import RetryPolicy
from .version import __version__


class ConfigException(Exception):
    pass


class RepositoryConfigException(ConfigException):
    pass


@dataclass
class MirrorConfig:
    mirror_id: str
    url: URL
    suites: list[str]
    components: list[str]
    arches: list[str]
    source: bool
    sign_by: list[Path] | None = None
    gpg_verify: bool = True
    publish_to_staging: bool = False
    snapshot_name_format: str = DEFAULT_NAME_FORMAT
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    package_filter: PackageFilter = field(default_factory=PackageFilter)

    @classmethod
    def from_line(cls, line: str, default_arch: str) -> "MirrorConfig":
        log = LoggerFactory.get_logger(cls)

        repository_type, url = line.split(maxsplit=1)
        mirror_id = None
        source = False
        sign_by = None

        arches: list[str] = []
        if "-" in repository_type:
            _, arch = repository_type.split("-", maxsplit=1)
            if arch != "src":
                arches.append(arch)
            else:
                source = True

        if url.startswith("["):
            options, url = url.split(sep="]", maxsplit=1)
            for option in options.strip("[]").strip().split():
                key, sep, value = option.partition("=")
                if not sep:
                    log.warning(f"Ignoring option `{option}` of config line: {line}")
                    continue

                match key:
                    case "id":
                        mirror_id = value
                    case "arch":
                        for arch in value.split(","):
                            if arch == "src":
                                source = True
                                continue

                            if arch in arches:
                                continue

                            arches.append(arch)
                    case "sign-by":
                        sign_by = list(map(Path, value.split(",")))
                    case _:
                        continue

        if not mirror_id:
            raise RepositoryConfigException(
                f"Repository line has no `id` option: {line}"
            )

        try:
            validate_mirror_id(mirror_id)
        except ValueError as ex:
            raise RepositoryConfigException(str(ex)) from ex

        try:
            url, suite = url.split(maxsplit=1)
        except ValueError as ex:
            raise RepositoryConfigException(
                f"Repository line has no suite: {line}"
            ) from ex

        if not arches and not source:
            arches.append(default_arch)

        if " " in suite:
            suite, components = suite.split(maxsplit=1)
            components = components.split()
        else:
            components = []

        suites = suite.split(",")

        if any(s.endswith("/") for s in suites):
            raise RepositoryConfigException(
                f"Flat repositories are not supported. Mirror {mirror_id}, suites:"
                f" {suites}"
            )

        if not components:
            raise RepositoryConfigException(
                f"Mirror {mirror_id} has nothing to mirror: no components in line"
                f" {line}"
            )

        if sign_by:
            for path in sign_by:
                if not path.is_file() or not os.access(path, os.R_OK):
                    log.warning(
                        f"The `sign-by` option contains inaccessible path: {path}"
                    )

        try:
            mirror_url = URL.from_string(url.rstrip("/"))
        except ValueError as ex:
            raise RepositoryConfigException(
                f"Invalid URL of mirror {mirror_id}: {url}"
            ) from ex

        return cls(
            mirror_id=mirror_id,
            url=mirror_url,
            suites=suites,
            components=components,
            arches=arches,
            source=source,
            sign_by=sign_by,
        )

    def update(self, other: "MirrorConfig"):
        """Merge another config line of the same mirror"""
        if other.url != self.url:
            raise RepositoryConfigException(
                f"Mirror {self.mirror_id} is configured with different URLs:"
                f" {self.url} and {other.url}"
            )

        for attribute in ("suites", "components", "arches"):
            values = getattr(self, attribute)
            values.extend(v for v in getattr(other, attribute) if v not in values)

        if other.source:
            self.source = True

        if not self.sign_by:
            self.sign_by = other.sign_by


class Config:
    BOOLEAN_KEYS = {
        "publish_to_staging",
    }

    DATA_KEYS = {
        "exclude_packages",
        "gpg_verify",
        "keep_last",
        "keep_versions",
        "keep_within",
        "snapshot_name_format",
    }

    DEFAULT_CONFIGFILE = "/etc/apt/snapshot.list"
    DEFAULT_BASE_PATH = "/var/spool/apt-snapshot"

    def __init__(
        self, config_file: Path, default_base_path: str = DEFAULT_BASE_PATH
    ) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._mirrors: dict[str, MirrorConfig] = {}
        self._boolean_options: dict[str, set[str]] = {}
        self._data_options: dict[str, dict[str, list[str]]] = {}

        self._files = [config_file]
        config_directory = config_file.with_name(f"{config_file.name}.d")
        if config_directory.is_dir():
            for file in sorted(config_directory.glob("*")):
                if not file.is_file() or file.suffix != ".list":
                    continue

                self._files.append(file)

        try:
            default_arch = subprocess.run(
                ["dpkg", "--print-architecture"],
                stdout=subprocess.PIPE,
                check=False,
                encoding="utf-8",
            ).stdout.strip()

            if not default_arch:
                raise FileNotFoundError()
        except FileNotFoundError:
            default_arch = "amd64"

        self._variables: dict[str, str] = {
            "defaultarch": default_arch,
            "max_conns": "8",
            "max_total_conns": "0",
            "retries": "5",
            "integrity_retries": "3",
            "retry_backoff": "1",
            "sync_timeout": "0",
            "uvloop": "1",
            "base_path": default_base_path,
            "mirror_path": "$base_path/mirrors",
            "var_path": "$base_path/var",
            "etc_trusted": "/etc/apt/trusted.gpg",
            "etc_trusted_parts": "/etc/apt/trusted.gpg.d",
            "gpg_verify": "on",
            "keep_last": "5",
            "keep_within": "30d",
            "snapshot_name_format": DEFAULT_NAME_FORMAT,
            "append_logs": "off",
            "limit_rate": "0",
            "use_proxy": "off",
            "http_proxy": "",
            "https_proxy": "",
            "proxy_user": "",
            "proxy_password": "",
            "http_user_agent": f"apt-snapshot/{__version__}",
            "http2_disable": "off",
            "no_check_certificate": "0",
            "certificate": "",
            "private_key": "",
            "ca_certificate": "",
            "tls_min_version": "",
            "tls_max_version": "",
            "tls_ciphers": "",
            "prometheus_enable": "off",
            "prometheus_host": "localhost",
            "prometheus_port": "8000",
        }

        repository_lines = self._parse_config_file()
        self._substitute_variables()
        self._add_mirrors(repository_lines)
        self._apply_mirror_options()

    def _parse_config_file(self) -> list[str]:
        repository_lines: list[str] = []

        for file in self._files:
            with open(file, "rt", encoding="utf-8") as fp:
                for line in fp:
                    line = line.strip()

                    if not line or any(
                        line.startswith(prefix) for prefix in ("#", ";")
                    ):
                        continue

                    command = next(iter(line.split(maxsplit=1)), None)

                    match line:
                        case line if command == "set":
                            try:
                                _, key, value = line.split(maxsplit=2)
                            except ValueError as ex:
                                raise ConfigException(
                                    f"Invalid `set` line in {file}: {line}"
                                ) from ex

                            self._variables[key] = value
                        case line if line.startswith("deb"):
                            repository_lines.append(line)
                        case line if command in self.BOOLEAN_KEYS:
                            for mirror_id in line.split()[1:]:
                                self._boolean_options.setdefault(
                                    command, set()
                                ).add(mirror_id)
                        case line if command in self.DATA_KEYS:
                            data = line.split()[1:]
                            if len(data) < 2:
                                raise ConfigException(
                                    f"`{command}` requires a mirror ID and a value:"
                                    f" {line}"
                                )

                            self._data_options.setdefault(command, {}).setdefault(
                                data[0], []
                            ).extend(data[1:])
                        case _:
                            self._log.warning(f"Unknown line in config: {line}")

        return repository_lines

    def _add_mirrors(self, lines: list[str]):
        for line in lines:
            mirror = MirrorConfig.from_line(line, self.default_arch)
            mirror.gpg_verify = self.gpg_verify
            mirror.snapshot_name_format = self.snapshot_name_format
            mirror.retention = self.retention

            if mirror.mirror_id in self._mirrors:
                self._mirrors[mirror.mirror_id].update(mirror)
            else:
                self._mirrors[mirror.mirror_id] = mirror

    def _apply_mirror_options(self):
        for option, mirror_ids in self._boolean_options.items():
            for mirror_id in mirror_ids:
                setattr(self._get_mirror(option, mirror_id), option, True)

        for option, values in self._data_options.items():
            for mirror_id, data in values.items():
                mirror = self._get_mirror(option, mirror_id)

                try:
                    self._apply_data_option(mirror, option, data)
                except ValueError as ex:
                    raise ConfigException(
                        f"Invalid `{option}` value for mirror {mirror_id}:"
                        f" {' '.join(data)}"
                    ) from ex

    def _get_mirror(self, option: str, mirror_id: str) -> MirrorConfig:
        if mirror_id not in self._mirrors:
            raise ConfigException(
                f"`{option}` was specified for unknown mirror: {mirror_id}"
            )

        return self._mirrors[mirror_id]

    @classmethod
    def _apply_data_option(cls, mirror: MirrorConfig, option: str, data: list[str]):
        match option:
            case "exclude_packages":
                mirror.package_filter.exclude_patterns.update(data)
            case "gpg_verify":
                mirror.gpg_verify = cls._to_bool(data[-1])
            case "keep_versions":
                mirror.package_filter.keep_versions = int(data[-1])
            case "keep_last":
                mirror.retention = mirror.retention.override(
                    RetentionPolicy(keep_last=int(data[-1]))
                )
            case "keep_within":
                mirror.retention = mirror.retention.override(
                    RetentionPolicy(keep_within=parse_duration(data[-1]))
                )
            case "snapshot_name_format":
                mirror.snapshot_name_format = " ".join(data)

    def _substitute_variables(self):
        max_tries = 16
        template_found = False
        while max_tries == 16 or template_found:
            template_found = False
            for key, value in self._variables.items():
                if "$" not in value:
                    continue

                try:
                    self._variables[key] = Template(value).substitute(self._variables)
                except (KeyError, ValueError) as ex:
                    raise ConfigException(
                        f"Unable to substitute variables in `{key}`: {value}"
                    ) from ex

                template_found = True

            max_tries -= 1
            if max_tries < 1:
                raise ConfigException(
                    "apt-snapshot: too many substitutions while evaluating variables"
                )

    def __getitem__(self, key: str) -> str:
        if key not in self._variables:
            raise KeyError(
                f"Variable {key} is not defined in the config file {self._files[0]}"
            )

        return self._variables[key]

    def create_working_directories(self):
        for variable in ("mirror_path", "base_path", "var_path"):
            path = Path(self[variable])
            path.mkdir(parents=True, exist_ok=True)

    def init_log_files(self):
        if self.append_logs:
            LoggerFactory.enable_append_logs()

        LoggerFactory.add_log_file(None, self.var_path / "apt-snapshot.log")
        for mirror_id in self._mirrors:
            LoggerFactory.add_log_file(mirror_id, self.var_path / f"{mirror_id}.log")

    @staticmethod
    def _to_bool(value: str) -> bool:
        return bool(value) and value.lower() not in ("0", "off", "no", "false")

    def get_bool(self, key: str) -> bool:
        return self._to_bool(self[key])

    def get_path(self, key: str) -> Path:
        return Path(self[key])

    def get_int(self, key: str, minimum: int = 0) -> int:
        try:
            value = int(self[key])
        except ValueError as ex:
            raise ConfigException(
                f"Wrong `{key}` configuration value: {self[key]}"
            ) from ex

        if value < minimum:
            raise ConfigException(
                f"`{key}` must be at least {minimum}, got {self[key]}"
            )

        return value

    def get_float(self, key: str) -> float:
        try:
            value = float(self[key])
        except ValueError as ex:
            raise ConfigException(
                f"Wrong `{key}` configuration value: {self[key]}"
            ) from ex

        if value < 0:
            raise ConfigException(f"`{key}` must not be negative: {self[key]}")

        return value

    def get_size(self, key: str) -> int:
        suffix = self[key][-1:]

        try:
            if not suffix.isnumeric():
                value = int(self[key][:-1])
                match suffix.lower():
                    case "k":
                        return value * 1024
                    case "m":
                        return value * 1024 * 1024
                    case _:
                        raise ConfigException(
                            f"Wrong `{key}` configuration suffix: {self[key]}."
                            " Allowed suffixes: k, m"
                        )

            return int(self[key])
        except ValueError as ex:
            raise ConfigException(
                f"Wrong `{key}` configuration value: {self[key]}"
            ) from ex

    @property
    def mirrors(self) -> dict[str, MirrorConfig]:
        return self._mirrors.copy()

    @property
    def base_path(self) -> Path:
        return self.get_path("base_path")

    @property
    def mirror_path(self) -> Path:
        return self.get_path("mirror_path")

    @property
    def var_path(self) -> Path:
        return self.get_path("var_path")

    @property
    def default_arch(self):
        return self["defaultarch"]

    @property
    def max_conns(self) -> int:
        return self.get_int("max_conns", minimum=1)

    @property
    def max_total_conns(self) -> int | None:
        return self.get_int("max_total_conns") or None

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.get_int("retries"),
            integrity_retries=self.get_int("integrity_retries"),
            backoff=self.get_float("retry_backoff"),
        )

    @property
    def sync_timeout(self) -> float | None:
        return self.get_float("sync_timeout") or None

    @property
    def limit_rate(self) -> int:
        return self.get_size("limit_rate")

    @property
    def retention(self) -> RetentionPolicy:
        try:
            return RetentionPolicy(
                keep_last=int(self["keep_last"]) if self["keep_last"] else None,
                keep_within=(
                    parse_duration(self["keep_within"])
                    if self["keep_within"]
                    else None
                ),
            )
        except ValueError as ex:
            raise ConfigException(f"Wrong retention configuration: {ex}") from ex

    @property
    def snapshot_name_format(self) -> str:
        return self["snapshot_name_format"]

    @property
    def gpg_verify(self) -> bool:
        return self.get_bool("gpg_verify")

    @property
    def append_logs(self):
        return self.get_bool("append_logs")

    @property
    def use_uvloop(self) -> bool:
        return self.get_bool("uvloop")

    @property
    def etc_trusted(self) -> Path:
        return self.get_path("etc_trusted")

    @property
    def etc_trusted_parts(self) -> Path:
        return self.get_path("etc_trusted_parts")

    @property
    def proxy(self) -> Proxy:
        return Proxy(
            use_proxy=self.get_bool("use_proxy"),
            http_proxy=self["http_proxy"],
            https_proxy=self["https_proxy"],
            username=self._variables.get("proxy_user"),
            password=self._variables.get("proxy_password"),
        )

    @property
    def tls(self) -> TLSPolicy:
        try:
            return TLSPolicy(
                verify=not self.get_bool("no_check_certificate"),
                ca_certificate=self["ca_certificate"] or None,
                certificate=self["certificate"] or None,
                private_key=self["private_key"] or None,
                min_version=self["tls_min_version"] or None,
                max_version=self["tls_max_version"] or None,
                ciphers=self["tls_ciphers"] or None,
            )
        except ValueError as ex:
            raise ConfigException(f"Wrong TLS configuration: {ex}") from ex

    @property
    def user_agent(self) -> str:
        return self["http_user_agent"]

    @property
    def http2_disable(self) -> bool:
        return self.get_bool("http2_disable")

    @property
    def prometheus_enable(self) -> bool:
        return self.get_bool("prometheus_enable")

    @property
    def prometheus_host(self) -> str:
        return self["prometheus_host"]

    @property
    def prometheus_port(self) -> int:
        return self.get_int("prometheus_port")

    def keyring(self, mirror: MirrorConfig) -> Keyring:
        return Keyring(
            sign_by=mirror.sign_by,
            etc_trusted=self.etc_trusted,
            etc_trusted_parts=self.etc_trusted_parts,
        )

    def downloader_settings(self, mirror: MirrorConfig) -> DownloaderSettings:
        return DownloaderSettings(
            url=mirror.url,
            user_agent=self.user_agent,
            tls=self.tls,
            proxy=self.proxy,
            http2_disable=self.http2_disable,
        )

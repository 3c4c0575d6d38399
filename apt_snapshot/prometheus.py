# SPDX-License-Identifer: GPL-3.0-or-later

from abc import ABC, abstractmethod
from collections.abc import Generator, Iterable
from typing import Any

from .transfer import TransferManager


class BaseTransferCollector(ABC):
    METRICS = (
        "queue_files_count",
        "queue_files_size",
        "downloaded_files_count",
        "downloaded_files_size",
        "error_files_count",
        "error_files_size",
        "missing_files_count",
        "missing_files_size",
        "unmodified_files_count",
        "unmodified_files_size",
    )

    def __init__(self, address: str, port: int) -> None:
        self._address = address
        self._port = port
        self._mirrors: list[tuple[str, TransferManager]] = []

    def prometheus_available(self) -> bool:
        return False

    def shutdown(self):  # noqa: B027
        pass

    def add_transfer_manager(self, mirror_id: str, transfer_manager: TransferManager):
        self._mirrors.append((mirror_id, transfer_manager))

    @abstractmethod
    def collect(self) -> Iterable[Any]:
        pass


class DummyTransferCollector(BaseTransferCollector):
    def collect(self):
        yield


try:
    from prometheus_client import Metric, start_http_server
    from prometheus_client.core import REGISTRY, GaugeMetricFamily
    from prometheus_client.registry import Collector
except ImportError:

    class TransferCollector(DummyTransferCollector):
        pass

else:

    class TransferCollector(BaseTransferCollector, Collector):  # type: ignore
        def __init__(self, address: str, port: int) -> None:
            super().__init__(address, port)

            self._wsgi_server = None
            self._wsgi_thread = None

            wsgi_data = start_http_server(port=port, addr=address)
            if wsgi_data:
                self._wsgi_server, self._wsgi_thread = wsgi_data

            REGISTRY.register(self)

        def prometheus_available(self) -> bool:
            return True

        def shutdown(self):
            REGISTRY.unregister(self)

            if self._wsgi_server:
                self._wsgi_server.shutdown()

                if self._wsgi_thread:
                    self._wsgi_thread.join()

        def _metric(self, name: str):
            mf = GaugeMetricFamily(
                f"apt_snapshot_{name}",
                name.replace("_", " ").capitalize(),
                labels=["mirror"],
            )

            for mirror_id, transfer_manager in self._mirrors:
                mf.add_metric([mirror_id], value=getattr(transfer_manager, name))

            return mf

        def collect(self) -> Generator[Metric, Any, None]:
            for name in self.METRICS:
                yield self._metric(name)

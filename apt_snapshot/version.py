# SPDX-License-Identifer: GPL-3.0-or-later

from importlib.metadata import PackageNotFoundError, version

try:
    # Distribution name, not `__package__`: they differ for this project.
    __version__ = version("apt-snapshot")
except PackageNotFoundError:
    __version__ = "unknown"

# SPDX-License-Identifer: GPL-3.0-or-later

import sys

from .apt_snapshot import main

sys.exit(main())

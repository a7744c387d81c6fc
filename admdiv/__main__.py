# python -m admdiv

import sys

from admdiv.cli import main

sys.exit(main())

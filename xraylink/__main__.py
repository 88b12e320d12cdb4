import sys

from xraylink.cli import main

sys.exit(main())

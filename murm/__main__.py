import sys

from murm.cli import main

sys.exit(main())

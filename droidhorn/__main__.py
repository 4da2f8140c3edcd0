import sys

from droidhorn.cli import main

sys.exit(main())

import sys

from heartgate.cli import main

sys.exit(main())

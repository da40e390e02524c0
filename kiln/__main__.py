# kiln/__main__.py
import sys

from kiln.cli import main

sys.exit(main())

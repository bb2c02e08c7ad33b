import sys

from pricepulse.cli import main

sys.exit(main())

import sys

from taxbot.main import main

sys.exit(main())

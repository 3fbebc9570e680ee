import sys

from oralexam.cli import main

sys.exit(main())

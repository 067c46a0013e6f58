import sys

from c2vm.cli import main

sys.exit(main())

import sys

from pgen_server.app import main

sys.exit(main())

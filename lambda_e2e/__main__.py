import sys

from lambda_e2e.cli import main

sys.exit(main())

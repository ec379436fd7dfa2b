#!/usr/bin/env python3
"""
Run the Lambda end-to-end harness from a checkout.

    python run_e2e.py run unit --function my-service-dev
"""

import sys

from lambda_e2e.cli import main

if __name__ == '__main__':
    sys.exit(main())

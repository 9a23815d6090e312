import sys

from subscription_billing.cli import main

if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
from usagemonitor.cli import main


if __name__ == "__main__":
    main()

#!/usr/bin/env python
"""Entry point script to run a single Replicate job from stdin."""
import sys

from replicate_runner.worker import main

if __name__ == "__main__":
    sys.exit(main())

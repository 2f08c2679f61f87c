# agentauth/__main__.py
import sys

from agentauth.cli import main

sys.exit(main())

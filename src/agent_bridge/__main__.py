import sys

from agent_bridge import main

if __name__ == "__main__":
    sys.exit(main())

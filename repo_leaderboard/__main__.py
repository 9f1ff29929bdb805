import sys

from repo_leaderboard.cli import main

sys.exit(main())

import sys

from outbreak_watch.__main__ import main

# cron entry point, e.g.:
# */15 * * * * cd /srv/outbreak-watch && python run_watch.py
sys.exit(main())

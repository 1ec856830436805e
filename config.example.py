"""Example configuration for the channel sync pipeline.

Copy this file to ``config.py`` and replace the placeholder values with your
own settings.  Secrets should never be committed to the repository.
"""

# Public Telegram channel mirrored into the blog.  The web preview at
# ``https://t.me/s/<CHANNEL>`` is scraped, no Telegram login is needed.
CHANNEL = "simon_rabbit_hole"

# OpenAI API key used to generate post metadata.  ``OPENAI_API_KEY`` in the
# environment takes precedence.  Leave empty to always use the heuristic
# fallback (slug ``post-<id>``, depth from length, no tags).
OPENAI_KEY = "sk-..."

# Models tried in order on every metadata attempt until one answers with
# parseable JSON.
METADATA_MODELS = [
    {"model": "gpt-4o-mini"},
]

# Files shared with the site.  Relative paths resolve against the repo root.
POSTS_PATH = "data/posts.json"
STATE_PATH = "data/sync-state.json"
REPORT_PATH = "data/last-sync-report.json"
SCRAPED_PATH = "data/scraped-posts.json"
MEDIA_DIR = "public/media"
MEDIA_URL_PREFIX = "/media/"

# Politeness and retry knobs.  Seconds unless noted.
DELAY = 1.2
RETRY_DELAY = 3
MAX_RETRIES = 3
MAX_PAGES = 25
HTTP_TIMEOUT = 30

# Messages shorter than this many characters are channel notices or
# image-only posts and are skipped.
MIN_TEXT_LENGTH = 150
# Relative length difference between two scrapes treated as rendering noise.
TEXT_MISMATCH_THRESHOLD = 0.1
# Downloads smaller than this many bytes are placeholder or error images.
MEDIA_MIN_SIZE = 5 * 1024
# How many of the most recent posts get their reaction counts refreshed
# during a normal sync.
REACTION_WINDOW = 20

# Commit and push the store after a successful run.
GIT_PUSH = True
GIT_REMOTE = "origin"
GIT_BRANCH = "main"

# Local control server.
SYNC_API_HOST = "127.0.0.1"
SYNC_API_PORT = 4747

# Bot token and chat ids used by ``notify.py`` to forward the run report.
TG_TOKEN = "123:ABC"
ALERT_CHAT_IDS = []

# Default log verbosity. Use "DEBUG", "INFO" or "ERROR".
LOG_LEVEL = "INFO"

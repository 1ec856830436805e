# Configuration constants for the channel sync pipeline.
# Secrets must be kept outside the repository; export OPENAI_API_KEY instead.

CHANNEL = "simon_rabbit_hole"

OPENAI_KEY = ""

METADATA_MODELS = [{"model": "gpt-4o-mini"}]

POSTS_PATH = "data/posts.json"
STATE_PATH = "data/sync-state.json"
REPORT_PATH = "data/last-sync-report.json"
SCRAPED_PATH = "data/scraped-posts.json"
MEDIA_DIR = "public/media"

GIT_PUSH = True
GIT_REMOTE = "origin"
GIT_BRANCH = "main"

TG_TOKEN = "123:ABC"
ALERT_CHAT_IDS = []

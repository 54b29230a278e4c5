import os
from datetime import datetime
from zoneinfo import ZoneInfo

# Data paths
DATA_DIR = os.getenv('DATA_DIR', './data')
RUNS_DIR = os.getenv('RUNS_DIR', os.path.join(DATA_DIR, 'runs'))
LOCAL_STORE_DIR = os.getenv('LOCAL_STORE_DIR', os.path.join(DATA_DIR, 'store'))

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

# Run date handling
RUN_TIMEZONE = os.getenv('RUN_TIMEZONE', 'UTC')


def today_key() -> str:
    """Date key (YYYY-MM-DD) for 'today' in the configured run timezone."""
    return datetime.now(ZoneInfo(RUN_TIMEZONE)).strftime('%Y-%m-%d')


# ===== STAGE 1: Source Fetch =====
SOURCE_API_URL = os.getenv('SOURCE_API_URL', 'https://hacker-news.firebaseio.com/v0')
DISCUSSION_API_URL = os.getenv('DISCUSSION_API_URL', 'https://hn.algolia.com/api/v1/items')
SOURCE_ITEM_LIMIT = int(os.getenv('SOURCE_ITEM_LIMIT', '10'))
REQUEST_TIMEOUT = int(os.getenv('REQUEST_TIMEOUT', '15'))
USER_AGENT = os.getenv('USER_AGENT', 'Mozilla/5.0 (compatible; DailyNewscastBot/1.0; +https://example.com/bot)')

# ===== STAGE 2: Content Extraction =====
EXTRACT_CONCURRENCY = int(os.getenv('EXTRACT_CONCURRENCY', '4'))
EXTRACT_PER_DOMAIN_CONCURRENCY = int(os.getenv('EXTRACT_PER_DOMAIN_CONCURRENCY', '1'))
EXTRACT_PER_DOMAIN_QPS = float(os.getenv('EXTRACT_PER_DOMAIN_QPS', '1.0'))
EXTRACT_HTTP_TIMEOUT_SEC = int(os.getenv('EXTRACT_HTTP_TIMEOUT_SEC', '20'))
EXTRACTOR_SEQUENCE = os.getenv('EXTRACTOR_SEQUENCE', 'trafilatura,readability').split(',')
EXTRACT_MIN_ACCEPT_WORDS = int(os.getenv('EXTRACT_MIN_ACCEPT_WORDS', '80'))
EXTRACT_MAX_ARTICLE_CHARS = int(os.getenv('EXTRACT_MAX_ARTICLE_CHARS', '20000'))
EXTRACT_MAX_COMMENT_CHARS = int(os.getenv('EXTRACT_MAX_COMMENT_CHARS', '8000'))
EXTRACT_MAX_COMMENTS = int(os.getenv('EXTRACT_MAX_COMMENTS', '40'))
# Third-party readability service, called as READABILITY_SERVICE_URL + article url. Empty disables it.
READABILITY_SERVICE_URL = os.getenv('READABILITY_SERVICE_URL', 'https://r.jina.ai/')

# ===== STAGE 3: Summarization =====
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
LLM_TIMEOUT_SEC = float(os.getenv('LLM_TIMEOUT_SEC', '90'))
SUMMARY_LANGUAGE = os.getenv('SUMMARY_LANGUAGE', 'en')
SUMMARY_MIN_WORDS = int(os.getenv('SUMMARY_MIN_WORDS', '40'))
SUMMARY_MAX_WORDS = int(os.getenv('SUMMARY_MAX_WORDS', '120'))

# ===== STAGE 4: Script Composition =====
SCRIPT_SPEAKER_NAMES = os.getenv('SCRIPT_SPEAKER_NAMES', 'Adam,Sara').split(',')
SCRIPT_MAX_WORDS_PER_LINE = int(os.getenv('SCRIPT_MAX_WORDS_PER_LINE', '60'))
SCRIPT_WPM_ESTIMATE = int(os.getenv('SCRIPT_WPM_ESTIMATE', '150'))  # Words per minute for duration estimation
SCRIPT_DEFAULT_TITLE = os.getenv('SCRIPT_DEFAULT_TITLE', 'Daily Tech Briefing')

# Moderation
MODERATION_MODEL = os.getenv('MODERATION_MODEL', 'omni-moderation-latest')
MODERATION_ENABLED = os.getenv('MODERATION_ENABLED', '1') == '1'
MODERATION_BLOCKLIST = [t.strip() for t in os.getenv('MODERATION_BLOCKLIST', '').split(',') if t.strip()]
MODERATION_MAX_REWRITES = int(os.getenv('MODERATION_MAX_REWRITES', '2'))

# ===== STAGE 5: Speech Synthesis =====
SYNTH_CONCURRENCY = int(os.getenv('SYNTH_CONCURRENCY', '3'))
TTS_BACKENDS = os.getenv('TTS_BACKENDS', 'openai,edge').split(',')
TTS_TIMEOUT_SEC = float(os.getenv('TTS_TIMEOUT_SEC', '60'))
AUDIO_FORMAT = os.getenv('AUDIO_FORMAT', 'mp3')
OPENAI_TTS_MODEL = os.getenv('OPENAI_TTS_MODEL', 'gpt-4o-mini-tts')
VOX_A = os.getenv('VOX_A', 'onyx')
VOX_B = os.getenv('VOX_B', 'nova')
EDGE_VOX_A = os.getenv('EDGE_VOX_A', 'en-GB-RyanNeural')
EDGE_VOX_B = os.getenv('EDGE_VOX_B', 'en-GB-SoniaNeural')

# ===== STAGE 6: Assembly =====
ASSEMBLER_URL = os.getenv('ASSEMBLER_URL', 'http://localhost:8090')
ASSEMBLER_TIMEOUT_SEC = float(os.getenv('ASSEMBLER_TIMEOUT_SEC', '300'))
SEGMENT_SILENCE_MS = int(os.getenv('SEGMENT_SILENCE_MS', '350'))

# ===== STAGE 7: Publish =====
STORE_BACKEND = os.getenv('STORE_BACKEND', 'local')  # local, s3
S3_BUCKET = os.getenv('S3_BUCKET', 'daily-newscast')
S3_ENDPOINT_URL = os.getenv('S3_ENDPOINT_URL', '') or None
S3_REGION = os.getenv('S3_REGION', 'auto')
S3_AUDIO_PREFIX = os.getenv('S3_AUDIO_PREFIX', 'episodes/')
S3_METADATA_PREFIX = os.getenv('S3_METADATA_PREFIX', 'metadata/')

# ===== Retry / Backoff =====
RETRY_MAX_ATTEMPTS = int(os.getenv('RETRY_MAX_ATTEMPTS', '3'))
RETRY_BASE_DELAY_SEC = float(os.getenv('RETRY_BASE_DELAY_SEC', '2'))
RETRY_MAX_DELAY_SEC = float(os.getenv('RETRY_MAX_DELAY_SEC', '30'))
RETRY_JITTER_SEC = float(os.getenv('RETRY_JITTER_SEC', '1'))
STAGE_MAX_ATTEMPTS = int(os.getenv('STAGE_MAX_ATTEMPTS', '2'))  # Whole-run stages (compose, assemble, publish)

# ===== Triggers =====
TRIGGER_TOKEN = os.getenv('TRIGGER_TOKEN', '')
SCHEDULE_ENABLED = os.getenv('SCHEDULE_ENABLED', '1') == '1'
SCHEDULE_CRON = os.getenv('SCHEDULE_CRON', '0 6 * * *')
RUN_LOCK_TTL_SEC = int(os.getenv('RUN_LOCK_TTL_SEC', '3600'))
SKIP_FAILED_DATES = os.getenv('SKIP_FAILED_DATES', '0') == '1'

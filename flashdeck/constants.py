"""
SM-2 scheduling constants.

Static defaults for the SM-2 algorithm and the study queue.
No runtime configuration or path defaults - pure constants only.
"""
from datetime import timedelta
from typing import Dict

# Ease factor given to every new card (2.5 == 250%).
DEFAULT_EASE_FACTOR: float = 2.5

# Ease factor floor. SM-2 never lets a card's ease drop below this value.
MINIMUM_EASE_FACTOR: float = 1.3

# Multiplier applied to the current interval on a "Hard" answer.
HARD_INTERVAL_FACTOR: float = 1.2

# Extra multiplier applied on top of the ease factor on an "Easy" answer.
EASY_BONUS: float = 1.3

# How long a lapsed (or failed new) card waits before it is shown again.
RELEARN_DELAY: timedelta = timedelta(minutes=10)

# Quality scores (0-5 scale of the published SM-2 formula) used for the
# ease-factor update. Keys are rating names so the mapping survives config
# round trips.
DEFAULT_QUALITY_MAP: Dict[str, int] = {
    "Again": 0,
    "Hard": 3,
    "Good": 4,
    "Easy": 5,
}

# Cards with an interval at or above this many days count as mature.
MATURE_INTERVAL_DAYS: int = 21

# Maximum number of unseen cards introduced in a single study session.
DEFAULT_NEW_CARDS_PER_SESSION: int = 20

# Version tag written into (and required from) JSON backups.
BACKUP_FORMAT_VERSION: int = 1

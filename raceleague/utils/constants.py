"""
Constants used across the match lifecycle and rating system.
"""

# Rating calculation constants
K_FACTOR = 100  # Raw delta = K_FACTOR * (actual - expected)
RATING_SCALE = 1000  # Elo divisor: 1 / (1 + 10^(diff / RATING_SCALE))
INITIAL_RATING = 2750
MAX_RATING_CHANGE = 200

# Players with fewer games than this compare against the whole field
INITIAL_COMPARISON_GAMES = 5
# Proximity mode compares against this many ranks above and below
COMPARISON_RANGE = 3

# Individual-mode position bonus and minimum guaranteed gain for the podium
POSITION_BONUS = {1: 20, 2: 10, 3: 5}
MIN_GUARANTEE = {1: 10, 2: 5, 3: 2}

# Display rating converges to internal rating once this many points are earned
CONVERGENCE_THRESHOLD = 15

# Convergence points per finishing position
CONVERGENCE_POINTS_TOP = {
    1: 1.0,
    2: 0.96,
    3: 0.92,
    4: 0.88,
    5: 0.84,
    6: 0.80,
    7: 0.76,
    8: 0.72,
    9: 0.68,
    10: 0.64,
    11: 0.60,
    12: 0.56,
}
CONVERGENCE_POINTS_13_TO_16 = 0.52
CONVERGENCE_POINTS_17_TO_20 = 0.48
CONVERGENCE_POINTS_DEFAULT = 0.35

# Match scheduling
PASSCODE_REVEAL_DELAY_SECONDS = 120  # team modes hold the passcode 2 minutes
REMINDER_MIN_LEAD_SECONDS = 3600  # only remind when scheduled >= 1h ahead
REMINDER_BEFORE_START_SECONDS = 300  # reminder fires 5 minutes before start
CHANNEL_CLEANUP_DELAY_SECONDS = 24 * 3600

# Recurring schedules
RECURRING_HORIZON_DAYS = 7  # keep a week of matches created ahead
RECURRING_DEFAULT_MIN_PLAYERS = 12
RECURRING_DEFAULT_MAX_PLAYERS = 20
SCHEDULE_TIMEZONE = "Asia/Tokyo"  # rule times are local to the league
# Minutes a match occupies; rules closer than this on a shared weekday overlap
CATEGORY_SPAN_MINUTES = {
    "CLASSIC": 60,
    "TEAM_CLASSIC": 60,
    "GP": 90,
    "TEAM_GP": 90,
}

# Split vote: one third of the participants (rounded up) must vote
SPLIT_VOTE_DIVISOR = 3

# Job queue retry policy
JOB_MAX_ATTEMPTS = 3
JOB_BACKOFF_BASE_SECONDS = 2

# Race scoring: CLASSIC family
CLASSIC_RACE_COUNT = 3
CLASSIC_MAX_POSITIONS = [20, 16, 12]
CLASSIC_ELIMINATION_THRESHOLDS = [17, 13, 9]

# Race scoring: GP family
GP_RACE_COUNT = 5
GP_MAX_POSITIONS = [99, 80, 60, 40, 20]
GP_ELIMINATION_THRESHOLDS = [81, 61, 41, 21, None]

# Team configuration limits
TEAM_CLASSIC_MIN_PLAYERS = 12
TEAM_CLASSIC_MAX_PLAYERS = 20
TEAM_GP_MIN_PLAYERS = 30
TEAM_GP_MAX_PLAYERS = 99
MIN_TEAM_SIZE = 2
MIN_TEAM_COUNT = 2

# Visual color slots available per team category
TEAM_CLASSIC_COLOR_SLOTS = [1, 2, 3, 4, 5, 6, 8, 10, 14, 15]
TEAM_GP_COLOR_SLOTS = list(range(1, 17))

TEAM_COLOR_NAMES = {
    1: "Blue",
    2: "Green",
    3: "Yellow",
    4: "Pink",
    5: "Red",
    6: "Purple",
    7: "Rose",
    8: "Cyan",
    9: "Lime",
    10: "Orange",
    11: "Navy",
    12: "Magenta",
    13: "Teal",
    14: "White",
    15: "Black",
    16: "Gold",
}

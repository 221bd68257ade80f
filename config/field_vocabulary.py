"""Field-name vocabulary for heterogeneous CSV/API records.

Order matters in every list: the first field that yields a value wins.
"""

# Fields that usually carry the record's text
CONTENT_FIELDS = [
    "feedback_content",
    "feedback",
    "prompt",
    "content",
    "body",
    "task_content",
    "text",
    "message",
    "instruction",
    "response",
]

# Known content shorter than this triggers the longest-string fallback
MIN_CONTENT_LENGTH = 10

# Fields that usually carry a rating, label or score
RATING_FIELDS = [
    "prompt_quality_rating",
    "feedback_quality_rating",
    "quality_rating",
    "rating",
    "category",
    "label",
    "score",
    "avg_score",
]

TOP_LABELS = {"top_10", "top10", "top", "selected", "better"}
BOTTOM_LABELS = {"bottom_10", "bottom10", "bottom", "rejected", "worse"}

# Values accepted by the rating/score field discovery fallback
TOP_DISCOVERY_VALUES = {"5", "4"}
BOTTOM_DISCOVERY_VALUES = {"1", "2"}

# Fields that may carry an upstream identifier, checked for duplicates
EXTERNAL_ID_FIELDS = ["task_id", "id", "uuid", "record_id"]

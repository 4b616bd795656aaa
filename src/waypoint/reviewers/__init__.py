from waypoint.reviewers.base import ReviewerBackend, extract_payload, opinion_from_payload
from waypoint.reviewers.command import REVIEW_PROMPT, CommandReviewer, build_review_input
from waypoint.reviewers.openai_sdk import OpenAIReviewer

__all__ = [
    "REVIEW_PROMPT",
    "CommandReviewer",
    "OpenAIReviewer",
    "ReviewerBackend",
    "build_review_input",
    "extract_payload",
    "opinion_from_payload",
]

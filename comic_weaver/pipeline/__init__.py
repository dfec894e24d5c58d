from .authoring import AUTHORING_STRATEGIES, author_chapter
from .chapter import generate_chapter
from .common import MissingPrerequisiteError, Services
from .ending import generate_ending

__all__ = [
    "AUTHORING_STRATEGIES",
    "MissingPrerequisiteError",
    "Services",
    "author_chapter",
    "generate_chapter",
    "generate_ending",
]

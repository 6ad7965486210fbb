"""Completeness check for citizen submissions.

Submissions are never rejected. When the text is too thin to act on, the
issue is still tracked and the citizen gets concrete questions back; the
check yields a SubmissionValidationError carrying those prompts instead of
raising it.
"""

from typing import List, Optional

from src.civicflow.errors import SubmissionValidationError
from src.civicflow.models import IssueSubmission


MIN_DESCRIPTION_WORDS = 3

DESCRIBE_PROMPT = "Please describe the problem you are reporting."
MORE_DETAIL_PROMPT = (
    "Could you add more detail, such as what is wrong and since when?"
)
LOCATION_PROMPT = "Where is the problem? A street name or landmark helps."


def missing_detail_prompts(submission: IssueSubmission) -> List[str]:
    """Questions to put back to the citizen; empty when the text is actionable.

    A missing location alone does not make a submission incomplete, but it
    is asked for alongside any text prompt.
    """
    words = submission.text.split()
    prompts = []
    if not words:
        prompts.append(DESCRIBE_PROMPT)
    elif len(words) < MIN_DESCRIPTION_WORDS:
        prompts.append(MORE_DETAIL_PROMPT)

    if prompts and submission.location is None:
        prompts.append(LOCATION_PROMPT)
    return prompts


def check_submission(submission: IssueSubmission) -> Optional[SubmissionValidationError]:
    """Return the completeness problem of a submission, or None."""
    prompts = missing_detail_prompts(submission)
    if not prompts:
        return None
    return SubmissionValidationError(
        "Submission needs more detail from the citizen",
        submission=submission.model_dump(mode="json"),
        prompts=prompts,
    )

"""
Correlation marker codec.

Every outbound prompt carries a marker naming its job, so the agent's reply
(which echoes the prompt in its caption) can be traced back to the job:

    embed("a cat surfing", "job_3f2a9c01b7de")
        → "a cat surfing\n\n[JOB_ID: job_3f2a9c01b7de]"
    extract("Your video is ready!\n[JOB_ID: job_3f2a9c01b7de]")
        → "job_3f2a9c01b7de"
    extract("no marker here")
        → None
"""

import re

MARKER_PREFIX = "[JOB_ID: "
MARKER_SUFFIX = "]"

# One line; the id has no brackets and no edge whitespace. Tolerates extra
# spaces the agent may insert around the id.
_MARKER_PAT = re.compile(r"\[JOB_ID:[ \t]*([^\[\]\s](?:[^\[\]\n]*[^\[\]\s])?)[ \t]*\]")


def format_marker(job_id: str) -> str:
    if not job_id or job_id != job_id.strip() or any(c in job_id for c in "[]\n"):
        raise ValueError(f"Job id {job_id!r} cannot be embedded in a marker")
    return f"{MARKER_PREFIX}{job_id}{MARKER_SUFFIX}"


def embed(prompt: str, job_id: str) -> str:
    """Append the marker for *job_id* to *prompt*, leaving the prompt untouched."""
    marker = format_marker(job_id)
    if not prompt:
        return marker
    return f"{prompt}\n\n{marker}"


def extract(text: str | None, caption: str | None = None) -> str | None:
    """
    Return the first well-formed job id found in *text*, then in *caption*.
    Returns None when neither contains a marker.
    """
    for source in (text, caption):
        if not source:
            continue
        m = _MARKER_PAT.search(source)
        if m:
            return m.group(1)
    return None

"""Keyword-based stance detection for evidence claims."""

from ..text.normalize import normalize_text

YES_KEYWORDS = frozenset("""
confirm confirmed confirms approve approved approves pass passed passes
sign signed signs ratify ratified ratifies win won wins elect elected elects
appoint appointed appoints nominate nominated nominates announce announced announces
launch launched launches acquire acquired acquires merge merged merger
settle settled settlement resign resigned resigns close closed complete completed
submit submitted submits file filed files
""".split())

NO_KEYWORDS = frozenset("""
deny denied denies refute refuted refutes reject rejected rejects veto vetoed
block blocked cancel canceled cancelled scrap scrapped postpone postponed
delay delayed lose lost loses defeat defeated fails fail failed
withdraw withdrawn withdraws refuse refused refuses false fake hoax
""".split())

YES_PHRASES = ("set to", "expected to")

# Checked before keywords; any of these marks the claim as pointing to "no"
NO_PHRASES = (
    "did not", "does not", "do not", "will not", "won t", "can t", "cannot",
    "not expected", "unlikely", "no evidence", "rules out", "ruled out",
)


def resolve_stance(claim: str) -> str:
    """Return supports_yes, supports_no or neutral for a claim."""
    normalized = normalize_text(claim)
    if not normalized:
        return "neutral"
    if any(phrase in normalized for phrase in NO_PHRASES):
        return "supports_no"
    tokens = normalized.split()
    yes_hit = any(t in YES_KEYWORDS for t in tokens) or any(p in normalized for p in YES_PHRASES)
    no_hit = any(t in NO_KEYWORDS for t in tokens)
    if yes_hit and not no_hit:
        return "supports_yes"
    if no_hit and not yes_hit:
        return "supports_no"
    return "neutral"

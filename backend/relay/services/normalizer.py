import re

# one space directly before any of these marks is dropped
_SPACE_BEFORE_PUNCT = re.compile(r" ([,.!?;:])")


def normalize(fragment: str, prior: str) -> str:
    """repair the word boundary between the accumulated output and the next fragment.

    returns the text to append to `prior`, or "" when the fragment is blank.
    `prior` must be the whole buffer emitted so far, not the previous fragment.
    only alphanumeric/alphanumeric boundaries get a space, and only ` X`
    for X in , . ! ? ; : is collapsed inside the fragment.
    """
    stripped = fragment.strip()
    if not stripped:
        return ""

    if prior and prior[-1].isalnum() and stripped[0].isalnum():
        merged = " " + fragment.lstrip()
    elif not prior or prior[-1].isspace():
        merged = fragment.lstrip()
    else:
        merged = fragment

    return _SPACE_BEFORE_PUNCT.sub(r"\1", merged)

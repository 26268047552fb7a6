"""
Common utility functions.
"""

from typing import Any, Dict, List, Mapping


def to_form_value(value: Any) -> str:
    """
    Convert one answer value to the string the service expects.

    Args:
        value: Scalar answer value

    Returns:
        Form-encoded string ("1"/"0" for booleans)
    """
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None:
        return ""
    return str(value)


def encode_answer_data(answers: Mapping[str, Any]) -> Dict[str, str]:
    """
    Flatten an answer map into data[i][name] / data[i][value] form fields.

    List values (merged checkbox groups) expand into one entry per element,
    all sharing the same name.

    Args:
        answers: Flat answer map

    Returns:
        Form fields ready to post
    """
    fields: Dict[str, str] = {}
    index = 0
    for name, value in answers.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            fields[f"data[{index}][name]"] = name
            fields[f"data[{index}][value]"] = to_form_value(item)
            index += 1
    return fields


def count_layout_pages(layout: str) -> int:
    """
    Count pages in an attempt layout string.

    The layout lists question slots with 0 closing each page, e.g. "1,2,0,3,0"
    is two pages.

    Args:
        layout: Comma separated layout

    Returns:
        Number of pages (at least 1)
    """
    slots: List[str] = [s.strip() for s in layout.split(",") if s.strip()]
    pages = slots.count("0")
    if slots and slots[-1] != "0":
        pages += 1
    return max(1, pages)

"""
Questions and in-memory answers of the page being edited.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from quiztaker.models import Answer, AnswerKind, AnswerOption, Question

_TRUE_STRINGS = {"1", "true", "on", "yes", "checked"}


def collect_answers(questions: Iterable[Question]) -> Dict[str, Any]:
    """
    Build the flat answer map sent to the service.

    Scalar fields map directly. Checkbox groups collapse into one list of the
    checked option values, in declared order; a group with nothing checked is
    left out entirely.
    """
    answers: Dict[str, Any] = {}
    for question in questions:
        for answer in question.answers:
            if answer.kind is AnswerKind.MULTI:
                checked = answer.checked()
                if checked:
                    answers[answer.name] = checked
            elif answer.value is not None:
                answers[answer.name] = answer.value
    return answers


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


class PageAnswerCache:
    """
    Holds the parsed questions of one page and applies answer edits.

    Field keys are either an answer name, or "<name>_<optionValue>" for a
    single option of a checkbox group.
    """

    def __init__(self) -> None:
        self.page_index: Optional[int] = None
        self._questions: List[Question] = []
        self._fields: Dict[str, Tuple[Answer, Optional[AnswerOption]]] = {}

    @property
    def questions(self) -> List[Question]:
        return self._questions

    def load(self, page_index: int, questions: List[Question]) -> None:
        """Replace the cache contents with a freshly parsed page."""
        fields: Dict[str, Tuple[Answer, Optional[AnswerOption]]] = {}
        for question in questions:
            for answer in question.answers:
                if answer.kind is AnswerKind.MULTI:
                    for option in answer.options:
                        fields[answer.option_key(option.value)] = (answer, option)
        # Plain names win over a colliding option key
        for question in questions:
            for answer in question.answers:
                fields[answer.name] = (answer, None)

        self.page_index = page_index
        self._questions = questions
        self._fields = fields

    def clear(self) -> None:
        self.page_index = None
        self._questions = []
        self._fields = {}

    def field_keys(self) -> List[str]:
        return list(self._fields)

    def set_value(self, field_key: str, value: Any) -> None:
        """
        Apply one edit.

        Raises:
            KeyError: field_key is not on the current page.
            ValueError: value is not one of the field's declared options.
        """
        if field_key not in self._fields:
            raise KeyError(field_key)

        answer, option = self._fields[field_key]

        if option is not None:
            option.selected = _as_bool(value)
            return

        if answer.kind is AnswerKind.MULTI:
            self._set_checked(answer, value)
            return

        if answer.options and value is not None:
            allowed = {o.value for o in answer.options}
            if str(value) not in allowed:
                raise ValueError(f"'{value}' is not an option of {answer.name}")
            for o in answer.options:
                o.selected = o.value == str(value)
        answer.value = value

    def collect(self) -> Dict[str, Any]:
        return collect_answers(self._questions)

    @staticmethod
    def _set_checked(answer: Answer, value: Any) -> None:
        if value is None:
            selected = set()
        elif isinstance(value, (list, tuple, set, frozenset)):
            selected = {str(v) for v in value}
        else:
            selected = {str(value)}

        unknown = selected - {o.value for o in answer.options}
        if unknown:
            raise ValueError(f"{sorted(unknown)} are not options of {answer.name}")

        for o in answer.options:
            o.selected = o.value in selected

"""
Answer codec: turns a raw question record into editable answer fields.
"""

from __future__ import annotations

import copy
import re
from typing import Dict, List, Optional, Protocol

from bs4 import BeautifulSoup, Tag
from pydantic import BaseModel, Field

from quiztaker.logger import setup_logger
from quiztaker.models import Answer, AnswerKind, AnswerOption, RawQuestion

logger = setup_logger(__name__)

PLACEHOLDER = "_____"

# Input names the service uses for its own bookkeeping
_SYSTEM_FIELD_MARKERS = ("sequencecheck", "flagged")


class ParsedQuestion(BaseModel):
    question_text: str = ""
    answers: List[Answer] = Field(default_factory=list)


class AnswerCodec(Protocol):
    def parse(self, raw: RawQuestion) -> ParsedQuestion: ...


class HtmlAnswerCodec:
    """
    Parses the HTML of a rendered question into answer fields.

    Pure and deterministic: the same markup always yields the same fields.
    """

    parser = "html.parser"

    def parse(self, raw: RawQuestion) -> ParsedQuestion:
        soup = BeautifulSoup(raw.html or "", self.parser)
        return ParsedQuestion(
            question_text=self._question_text(soup),
            answers=self._answers(soup),
        )

    # ------------------------------------------------------------------
    # Question text
    # ------------------------------------------------------------------
    def _question_text(self, soup: BeautifulSoup) -> str:
        qtext = soup.select_one(".formulation .qtext")
        if qtext is not None:
            return qtext.get_text(" ", strip=True)

        formulation = soup.select_one(".formulation")
        if formulation is None:
            return ""

        # Embedded-answer questions: keep the markup, blank out the inputs
        clone = copy.copy(formulation)
        for el in clone.select('script, input[type="hidden"], label.accesshide'):
            el.decompose()
        for el in clone.select('input[type="text"], input[type="number"], textarea, select'):
            placeholder = soup.new_tag("span")
            placeholder["class"] = "answer-placeholder"
            placeholder.string = PLACEHOLDER
            el.replace_with(placeholder)
        for el in clone.find_all(True):
            for attr in ("id", "for"):
                if attr in el.attrs:
                    del el.attrs[attr]
            if "answer-placeholder" not in (el.get("class") or []):
                el.attrs.pop("class", None)

        html = "".join(str(child) for child in clone.contents)
        return re.sub(r"\s+", " ", html).strip()

    # ------------------------------------------------------------------
    # Answer fields
    # ------------------------------------------------------------------
    def _answers(self, soup: BeautifulSoup) -> List[Answer]:
        answers: List[Answer] = []
        by_name: Dict[str, Answer] = {}

        for el in soup.find_all(["input", "select", "textarea"]):
            name = el.get("name", "")
            input_type = _input_type(el)
            if el.name == "input" and (el.get("type") or "").lower() == "hidden":
                continue
            if not name or any(marker in name for marker in _SYSTEM_FIELD_MARKERS):
                continue

            label = _input_label(soup, el)

            if input_type in ("radio", "checkbox"):
                option = AnswerOption(
                    value=el.get("value", ""),
                    label=label,
                    selected=el.has_attr("checked"),
                )
                existing = by_name.get(name)
                if existing is not None:
                    existing.options.append(option)
                    if input_type == "radio" and option.selected:
                        existing.value = option.value
                    continue
                answer = Answer(
                    name=name,
                    kind=AnswerKind.MULTI if input_type == "checkbox" else AnswerKind.SCALAR,
                    input_type=input_type,
                    label=label,
                    required=el.has_attr("required"),
                    value=option.value if input_type == "radio" and option.selected else None,
                    options=[option],
                )
            elif input_type == "select":
                options = [
                    AnswerOption(
                        value=opt.get("value", opt.get_text(strip=True)),
                        label=opt.get_text(strip=True),
                        selected=opt.has_attr("selected"),
                    )
                    for opt in el.find_all("option")
                ]
                selected = next((o.value for o in options if o.selected), None)
                answer = Answer(
                    name=name,
                    input_type=input_type,
                    label=label,
                    required=el.has_attr("required"),
                    value=selected,
                    options=options,
                )
            else:
                value = el.get_text() if input_type == "textarea" else el.get("value")
                answer = Answer(
                    name=name,
                    input_type=input_type,
                    label=label,
                    required=el.has_attr("required"),
                    # Blank markup is unanswered; only edits send a value
                    value=value or None,
                )

            by_name[name] = answer
            answers.append(answer)

        return answers


def _input_type(el: Tag) -> str:
    if el.name == "select":
        return "select"
    if el.name == "textarea":
        return "textarea"
    input_type = (el.get("type") or "text").lower()
    if input_type in ("radio", "checkbox", "hidden"):
        return input_type
    return "text"


def _input_label(soup: BeautifulSoup, el: Tag) -> str:
    """Find the human-readable label of an input."""
    element_id: Optional[str] = el.get("id")
    if element_id:
        label = soup.find("label", attrs={"for": element_id})
        if label is not None:
            return label.get_text(" ", strip=True)

    parent_label = el.find_parent("label")
    if parent_label is not None:
        return parent_label.get_text(" ", strip=True)

    parent = el.parent
    if parent is not None and parent.name != "[document]":
        text = parent.get_text(" ", strip=True)
        value = el.get("value", "")
        if value:
            text = text.replace(value, "").strip()
        if text:
            return text

    return el.get("name", "")

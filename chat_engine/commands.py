"""One-shot editing commands run on a text selection.

Commands are sent without the system message and keep their own sampling
temperature where determinism matters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from note_core.errors import UnknownCommand

SAME_LANGUAGE = "Output in the same language as the source, do not output English if it is not English"


@dataclass(frozen=True)
class Command:
    name: str
    render: Callable[[str, Optional[str]], str]
    temperature: Optional[float] = None
    needs_subtype: bool = False

    def prompt(self, selected_text: str, subtype: Optional[str] = None) -> str:
        return self.render(selected_text, subtype)


def _simple(instruction: str, separator: str = ":\n\n") -> Callable[[str, Optional[str]], str]:
    return lambda text, _subtype: f"{instruction}{separator}{text}"


def _emojify(text: str, _subtype: Optional[str]) -> str:
    return (
        "Please insert emojis to the following content without changing the text. "
        "Insert at as many places as possible, but don't have any 2 emojis together. "
        f"The original text must be returned.\nContent: {text}"
    )


def _tweet(text: str, _subtype: Optional[str]) -> str:
    return (
        "Please rewrite the following content to under 280 characters using simple sentences. "
        f"{SAME_LANGUAGE}. Please follow the instruction strictly. Content:\n\n{text}"
    )


def _tweet_thread(text: str, _subtype: Optional[str]) -> str:
    return (
        "Please follow the instructions closely step by step and rewrite the content to a thread. "
        "1. Each paragraph must be under 240 characters. "
        "2. The starting line is `THREAD START\n`, and the ending line is `\nTHREAD END`. "
        "3. You must use `\n\n---\n\n` to separate each paragraph! Then return it without any other changes. "
        "4. Make it as engaging as possible. "
        f"5. {SAME_LANGUAGE}.\n The original content:\n\n{text}"
    )


def _translate(text: str, language: Optional[str]) -> str:
    return f"Please translate the following text to {language}:\n\n{text}"


def _change_tone(text: str, tone: Optional[str]) -> str:
    return f"Please change the tone of the following text to {tone}. {SAME_LANGUAGE}:\n\n{text}"


def _adhoc(text: str, custom_prompt: Optional[str]) -> str:
    if "{}" in (custom_prompt or ""):
        return custom_prompt.replace("{}", text)
    return f"{custom_prompt}\n\n{text}"


COMMANDS: Dict[str, Command] = {
    command.name: command
    for command in (
        Command(
            "fixGrammarSpellingSelection",
            _simple("Please fix the grammar and spelling of the following text and return it without any other changes"),
        ),
        Command(
            "summarizeSelection",
            _simple(
                "Please summarize the following text into bullet points and return it without any other changes. "
                + SAME_LANGUAGE
            ),
        ),
        Command(
            "tocSelection",
            _simple(
                "Please generate a table of contents for the following text and return it without any other changes. "
                + SAME_LANGUAGE
            ),
        ),
        Command(
            "glossarySelection",
            _simple(
                "Please generate a glossary for the following text and return it without any other changes. "
                + SAME_LANGUAGE
            ),
        ),
        Command(
            "simplifySelection",
            _simple("Please simplify the following text so that a 6th-grader can understand. " + SAME_LANGUAGE),
        ),
        Command("emojifySelection", _emojify),
        Command(
            "removeUrlsFromSelection",
            _simple("Please remove all URLs from the following text and return it without any other changes"),
        ),
        Command("rewriteTweetSelection", _tweet, temperature=0.2),
        Command("rewriteTweetThreadSelection", _tweet_thread, temperature=0.2),
        Command(
            "rewriteShorterSelection",
            _simple(
                "Please rewrite the following text to make it half as long while keeping the meaning as much as "
                "possible. " + SAME_LANGUAGE,
                ":\n",
            ),
        ),
        Command(
            "rewriteLongerSelection",
            _simple(
                "Please rewrite the following text to make it twice as long while keeping the meaning as much as "
                "possible. " + SAME_LANGUAGE,
                ":\n",
            ),
        ),
        Command(
            "eli5Selection",
            _simple("Please explain the following text like I'm 5 years old. " + SAME_LANGUAGE),
        ),
        Command(
            "rewritePressReleaseSelection",
            _simple("Please rewrite the following text to make it sound like a press release. " + SAME_LANGUAGE),
        ),
        Command("translateSelection", _translate, needs_subtype=True),
        Command("changeToneSelection", _change_tone, needs_subtype=True),
        Command("applyAdhocPrompt", _adhoc, temperature=0.1, needs_subtype=True),
    )
}


def command_names() -> List[str]:
    return list(COMMANDS)


def get_command(name: str) -> Command:
    try:
        return COMMANDS[name]
    except KeyError:
        raise UnknownCommand(f"Unknown command '{name}'.", details={"command": name}) from None


def render_command(name: str, selected_text: str, subtype: Optional[str] = None) -> str:
    command = get_command(name)
    if command.needs_subtype and not (subtype or "").strip():
        raise UnknownCommand(f"Command '{name}' needs a target, e.g. a language or tone.", details={"command": name})
    return command.prompt(selected_text, subtype)

"""Prompt assembly for chat and retrieval-QA pipelines."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

CONDENSE_QUESTION_TEMPLATE = (
    "Given the following conversation and a follow up question, rephrase the follow up "
    "question to be a standalone question, in its original language.\n\n"
    "Chat History:\n{chat_history}\nFollow Up Input: {question}\nStandalone question:"
)

QA_TEMPLATE = (
    "Use the following pieces of context to answer the question at the end. If you don't know "
    "the answer, just say that you don't know, don't try to make up an answer.\n\n"
    "{context}\n\nQuestion: {question}\nHelpful Answer:"
)


@dataclass(frozen=True)
class ChatPrompt:
    """``[system instruction?] + history + current input``.

    A prompt without a system message leaves the entry out altogether;
    an empty system message is never sent.
    """

    system_message: Optional[str] = None

    @property
    def suppressed(self) -> bool:
        return not self.system_message

    def format(self, history: Sequence[Tuple[str, str]], user_input: str) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self.system_message:
            messages.append({"role": "system", "content": self.system_message})
        for past_input, past_output in history:
            messages.append({"role": "user", "content": past_input})
            messages.append({"role": "assistant", "content": past_output})
        messages.append({"role": "user", "content": user_input})
        return messages


class PromptAssembler:
    """Hands out the default chat prompt and its variants."""

    def __init__(self, system_message: str) -> None:
        self.system_message = system_message

    def chat_prompt(self) -> ChatPrompt:
        return ChatPrompt(self.system_message or None)

    def suppressed(self) -> ChatPrompt:
        return ChatPrompt(None)

    def with_override(self, system_message: Optional[str]) -> ChatPrompt:
        return ChatPrompt(system_message or None)


def format_chat_history(history: Sequence[Tuple[str, str]]) -> str:
    return "\n".join(f"Human: {human}\nAssistant: {ai}" for human, ai in history)


def condense_question_messages(history: Sequence[Tuple[str, str]], question: str) -> List[Dict[str, str]]:
    content = CONDENSE_QUESTION_TEMPLATE.format(chat_history=format_chat_history(history), question=question)
    return [{"role": "user", "content": content}]


def qa_messages(prompt: ChatPrompt, context_chunks: Sequence[str], question: str) -> List[Dict[str, str]]:
    content = QA_TEMPLATE.format(context="\n\n".join(context_chunks), question=question)
    return prompt.format((), content)

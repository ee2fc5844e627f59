"""
Request transformer: conversation state -> upstream ``ChatRequest``.

Shape of every request built here::

    [system] + history (text only) + [user (text, then any inlined images)]

The caller's history list is never mutated.
"""

import logging
from typing import List, Optional, Sequence

from chatproxy.models.schemas import ChatRequest, ChatTurn, ContentPart, TextPart
from chatproxy.services.image_inliner import ImageInliner

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class RequestTransformer:
    def __init__(
        self,
        inliner: ImageInliner,
        model: str,
        default_system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> None:
        self.inliner = inliner
        self.model = model
        self.default_system_prompt = default_system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def build(
        self,
        history: Sequence[ChatTurn],
        new_user_text: str,
        image_refs: Sequence[str] = (),
        system_prompt: Optional[str] = None,
    ) -> ChatRequest:
        """Build the upstream request.

        Args:
            history: Prior turns, reduced to plain text
            new_user_text: Text of the turn being sent
            image_refs: Image references attached to the new turn
            system_prompt: Preset prompt; the default persona is used if empty

        Returns:
            ChatRequest with streaming enabled and fixed sampling parameters
        """
        prompt = system_prompt if system_prompt and system_prompt.strip() else self.default_system_prompt

        turns: List[ChatTurn] = [ChatTurn(role="system", content=prompt)]
        turns.extend(ChatTurn(role=turn.role, content=turn.text()) for turn in history)
        turns.append(ChatTurn(role="user", content=new_user_text))

        if image_refs:
            image_parts = await self.inliner.inline_many(image_refs)
            if image_parts:
                self._attach_images(turns, image_parts)
            else:
                logger.warning(f"None of {len(image_refs)} image reference(s) could be used")

        return ChatRequest(
            turns=turns,
            model=self.model,
            stream=True,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    @staticmethod
    def _attach_images(turns: List[ChatTurn], image_parts: List[ContentPart]) -> None:
        last_user = next(
            (i for i in range(len(turns) - 1, -1, -1) if turns[i].role == "user"),
            None,
        )
        if last_user is None:
            turns.append(ChatTurn(role="user", content=list(image_parts)))
            return

        original = turns[last_user].content
        if isinstance(original, str):
            leading: List[ContentPart] = [TextPart(text=original)] if original else []
        else:
            leading = list(original)
        turns[last_user] = ChatTurn(role="user", content=leading + list(image_parts))

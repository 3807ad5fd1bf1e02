"""
Story and illustration generation.

`StoryGenerator` is the seam the book service depends on; the OpenAI
implementation below is the one wired into the API. Tests substitute a fake.
"""
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from openai import OpenAI

from domain.models import DraftPage, StoryDraft
from settings import settings

logger = logging.getLogger(__name__)


ART_STYLES: Dict[str, str] = {
    "classic": "classic storybook illustration, warm watercolor textures, soft lighting",
    "comic": "comic book style with bold outlines, dynamic poses, vibrant colors",
    "watercolor": "delicate watercolor painting, soft pastel colors, dreamy atmosphere",
    "cartoon": "modern cartoon style, bright saturated colors, cute character designs, smooth gradients",
    "realistic": "semi-realistic digital illustration, detailed textures, cinematic lighting",
    "minimalist": "minimalist illustration, clean lines, limited color palette, simple shapes",
}

IMAGE_STYLE_SUFFIX = "Children's book illustration, high quality, same character design throughout"

STORY_SYSTEM_PROMPT = """You write picture books for children aged 3 to 8.

Rules:
- The protagonist is always the child whose name you are given
- Stories are positive: friendship, courage, kindness
- Simple language, 2 to 4 short sentences per page
- A book has exactly {page_count} pages
- Page 1 is the cover, the last page is the happy ending
- Every imagePrompt starts with the same fixed description of the protagonist
  (age, hair, eyes, clothes) and never changes their appearance

Answer with JSON only:
{{"title": "...", "characterSheet": "...", "pages": [{{"pageNumber": 1, "text": "...", "imagePrompt": "..."}}]}}"""

PHOTO_ANALYSIS_PROMPT = """Look at this photo of a child and describe the visible features needed to draw a
storybook character who looks like them: hair colour and style, eye colour, skin tone,
and distinctive features such as freckles or glasses.

Only describe what is visible, in neutral and positive words. Do not guess age,
nationality or ethnicity.

Answer with JSON only:
{"description": "one sentence usable as an illustration prompt"}"""


class GenerationError(Exception):
    """The generator returned nothing usable."""


class StoryGenerator(Protocol):
    def generate_narrative(
        self,
        protagonist_name: str,
        theme: str,
        character_description: Optional[str] = None,
        style: str = "cartoon",
    ) -> StoryDraft:
        ...

    def regenerate_page_text(
        self,
        protagonist_name: str,
        theme: str,
        page_number: int,
        current_text: str,
        custom_prompt: Optional[str] = None,
        style: str = "cartoon",
        character_sheet: Optional[str] = None,
    ) -> DraftPage:
        ...

    def generate_illustration(self, prompt: str) -> str:
        """Returns a temporary URL of the generated image."""
        ...

    def describe_photo(self, data: bytes, content_type: str) -> str:
        """A one-sentence description of the child in the photo."""
        ...


def ensure_consistent_prompt(prompt: str, character_sheet: str, style_description: str) -> str:
    """Prefix the character sheet and append the art style when the model left them out."""
    result = (prompt or "").strip()
    lowered = result.lower()
    if character_sheet and character_sheet.lower()[:30] not in lowered:
        result = f"{character_sheet}. {result}"
    if style_description.lower()[:30] not in lowered:
        result = f"{result}. Art style: {style_description}"
    return result


def parse_story_draft(payload: Dict[str, Any], style_description: str, page_count: int) -> StoryDraft:
    """
    Convert the model's JSON answer into a StoryDraft.

    Raises:
        GenerationError: If the answer does not hold exactly `page_count` pages
    """
    if not isinstance(payload, dict):
        raise GenerationError("The answer is not a JSON object")
    pages = payload.get("pages") or []
    if not isinstance(pages, list) or not all(isinstance(p, dict) for p in pages):
        raise GenerationError("pages must be a list of objects")
    if len(pages) != page_count:
        raise GenerationError(f"Expected {page_count} pages, got {len(pages)}")
    character_sheet = str(payload.get("characterSheet") or "")
    draft_pages = []
    for index, raw in enumerate(pages, start=1):
        draft_pages.append(DraftPage(
            # Numbering comes from position so pages stay contiguous
            number=index,
            text=str(raw.get("text") or "").strip(),
            image_prompt=ensure_consistent_prompt(str(raw.get("imagePrompt") or ""), character_sheet, style_description),
        ))
    title = str(payload.get("title") or "").strip()
    return StoryDraft(title=title, pages=draft_pages, character_sheet=character_sheet)


class OpenAIStoryGenerator:
    """StoryGenerator backed by the OpenAI chat and images APIs."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: Optional[str] = None,
        image_model: Optional[str] = None,
        vision_model: Optional[str] = None,
        page_count: Optional[int] = None,
        client: Optional[OpenAI] = None,
    ):
        self.text_model = text_model or settings.OPENAI_TEXT_MODEL
        self.image_model = image_model or settings.OPENAI_IMAGE_MODEL
        self.vision_model = vision_model or settings.OPENAI_VISION_MODEL
        self.page_count = page_count or settings.STORY_PAGE_COUNT
        self._api_key = api_key or settings.OPENAI_API_KEY
        self._client = client

    @property
    def client(self) -> OpenAI:
        # Created lazily so the app starts without a key configured
        if self._client is None:
            if not self._api_key:
                raise GenerationError("OPENAI_API_KEY is not set")
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def _request_json(self, model: str, messages: List[Dict[str, Any]], max_tokens: int, **options) -> Dict[str, Any]:
        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            **options,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GenerationError("Empty completion")
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise GenerationError(f"Completion is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise GenerationError(f"Expected a JSON object, got {type(payload).__name__}")
        return payload

    def _complete_json(self, system: str, user: str, temperature: float, max_tokens: int) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        return self._request_json(self.text_model, messages, max_tokens, temperature=temperature)

    def generate_narrative(
        self,
        protagonist_name: str,
        theme: str,
        character_description: Optional[str] = None,
        style: str = "cartoon",
    ) -> StoryDraft:
        style_description = ART_STYLES.get(style, ART_STYLES["cartoon"])
        if character_description:
            character = f'Base the character sheet on this real description: "{character_description}"'
        else:
            character = f"Invent a memorable look for {protagonist_name}"
        user = (
            f'Write a {self.page_count}-page picture book whose protagonist is "{protagonist_name}". '
            f'The theme is: "{theme}". {character}. '
            f'End every imagePrompt with: "{style_description}".'
        )
        payload = self._complete_json(
            STORY_SYSTEM_PROMPT.format(page_count=self.page_count),
            user,
            temperature=0.7,
            max_tokens=5000,
        )
        draft = parse_story_draft(payload, style_description, self.page_count)
        logger.info("Generated narrative %r with %s pages", draft.title, len(draft.pages))
        return draft

    def regenerate_page_text(
        self,
        protagonist_name: str,
        theme: str,
        page_number: int,
        current_text: str,
        custom_prompt: Optional[str] = None,
        style: str = "cartoon",
        character_sheet: Optional[str] = None,
    ) -> DraftPage:
        style_description = ART_STYLES.get(style, ART_STYLES["cartoon"])
        user = (
            f'Rewrite page {page_number} of the story about "{theme}" starring "{protagonist_name}". '
            f'Current text: "{current_text}". '
        )
        if character_sheet:
            user += f'The protagonist looks like this on every page: "{character_sheet}". '
        if custom_prompt:
            user += f"Follow this instruction: {custom_prompt}. "
        else:
            user += "Write an alternative version that keeps the story coherent. "
        user += f'End the imagePrompt with: "{style_description}". Answer with JSON only: {{"text": "...", "imagePrompt": "..."}}'
        payload = self._complete_json(
            STORY_SYSTEM_PROMPT.format(page_count=self.page_count),
            user,
            temperature=0.9,
            max_tokens=500,
        )
        text = str(payload.get("text") or "").strip()
        if not text:
            raise GenerationError(f"No text returned for page {page_number}")
        return DraftPage(
            number=page_number,
            text=text,
            image_prompt=ensure_consistent_prompt(
                str(payload.get("imagePrompt") or ""),
                character_sheet or "",
                style_description,
            ),
        )

    def generate_illustration(self, prompt: str) -> str:
        response = self.client.images.generate(
            model=self.image_model,
            prompt=f"{prompt}. {IMAGE_STYLE_SUFFIX}",
            n=1,
            size="1024x1024",
            quality="standard",
        )
        url = response.data[0].url if response.data else None
        if not url:
            raise GenerationError("No image URL returned")
        return url

    def describe_photo(self, data: bytes, content_type: str) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": PHOTO_ANALYSIS_PROMPT},
                # Low detail is enough for hair, eyes and skin tone
                {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{encoded}", "detail": "low"}},
            ],
        }]
        payload = self._request_json(self.vision_model, messages, max_tokens=500)
        description = str(payload.get("description") or "").strip()
        if not description:
            raise GenerationError("No description returned for the photo")
        return description

"""Keyword-scored emotional context for a conversational turn."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from memcore.memory.normalizer import contains_keyword, normalize
from memcore.memory.types import ConversationTurn, EmotionalContext, EmotionReading

NEUTRAL = "neutral"

EMOTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "joy": (
        "happy", "glad", "cheerful", "delighted", "excited", "wonderful",
        "행복", "기쁘", "즐거", "신나", "멋지", "훌륭",
    ),
    "sadness": (
        "sad", "unhappy", "depressed", "miserable", "gloomy", "sorrowful",
        "슬프", "우울", "속상", "서러", "눈물", "힘들",
    ),
    "anger": (
        "angry", "mad", "furious", "annoyed", "irritated", "frustrated",
        "화나", "분노", "짜증", "열받", "답답",
    ),
    "fear": (
        "afraid", "scared", "terrified", "anxious", "worried", "nervous",
        "무서", "두려", "불안", "걱정", "긴장", "떨리",
    ),
    "surprise": (
        "surprised", "amazed", "astonished", "shocked", "unexpected",
        "놀라", "깜짝", "신기", "의외", "뜻밖",
    ),
    "disgust": (
        "disgusted", "revolted", "repulsed", "gross", "awful",
        "역겨", "징그러", "더러", "구역질",
    ),
    "trust": (
        "trust", "believe", "confident", "secure", "reliable",
        "신뢰", "확신", "안심", "든든",
    ),
    "love": (
        "love", "adore", "cherish", "affection", "caring",
        "사랑", "아끼", "소중", "애정", "좋아하",
    ),
    "guilt": (
        "guilty", "remorse", "regret", "sorry", "ashamed",
        "죄책", "미안", "후회", "죄송", "부끄러",
    ),
    "pride": (
        "proud", "accomplished", "successful", "achieved",
        "자랑", "뿌듯", "성공", "달성",
    ),
    "hope": (
        "hope", "optimistic", "looking forward",
        "희망", "기대", "소망",
    ),
}

INTENSIFIERS = ("very", "extremely", "incredibly", "absolutely", "totally", "정말", "너무", "진짜")
DIMINISHERS = ("slightly", "somewhat", "a bit", "a little", "kind of", "조금", "약간")
POSITIVE_WORDS = ("good", "great", "excellent", "wonderful", "amazing", "happy", "love", "좋", "행복")
NEGATIVE_WORDS = ("bad", "terrible", "awful", "horrible", "hate", "sad", "angry", "싫", "나쁘")

KEYWORD_WEIGHT = 0.3
PRIMARY_MIN_SCORE = 0.2
SECONDARY_MIN_SCORE = 0.1
HISTORY_WINDOW = 5


class EmotionAnalyzer:
    def __init__(self, emotion_keywords: Optional[dict[str, tuple[str, ...]]] = None) -> None:
        self._keywords = emotion_keywords or EMOTION_KEYWORDS

    def analyze(
        self, text: str, history: Sequence[ConversationTurn] = ()
    ) -> EmotionalContext:
        scores = self._scores(text)
        primary = self._primary(scores)
        intensity = self._intensity(text)
        secondary = tuple(
            emotion
            for emotion, score in sorted(scores.items(), key=lambda item: item[1], reverse=True)
            if emotion != primary and score > SECONDARY_MIN_SCORE
        )[:3]

        trail: list[EmotionReading] = []
        for turn in list(history)[-HISTORY_WINDOW:]:
            trail.append(
                EmotionReading(
                    emotion=self._primary(self._scores(turn.content)),
                    intensity=self._intensity(turn.content),
                    timestamp=turn.timestamp,
                )
            )
        trail.append(EmotionReading(emotion=primary, intensity=intensity))

        return EmotionalContext(
            primary_emotion=primary,
            intensity=intensity,
            sentiment=self._sentiment(text),
            secondary_emotions=secondary,
            trail=tuple(trail),
        )

    def _scores(self, text: str) -> dict[str, float]:
        normalized = normalize(text)
        scores = {
            emotion: KEYWORD_WEIGHT
            * sum(1 for keyword in keywords if contains_keyword(normalized, keyword))
            for emotion, keywords in self._keywords.items()
        }
        if "!" in normalized and "joy" in scores:
            scores["joy"] += 0.1
        return scores

    @staticmethod
    def _primary(scores: dict[str, float]) -> str:
        if not scores:
            return NEUTRAL
        emotion = max(scores, key=lambda key: scores[key])
        return emotion if scores[emotion] > PRIMARY_MIN_SCORE else NEUTRAL

    @staticmethod
    def _intensity(text: str) -> float:
        normalized = normalize(text)
        intensity = 0.5
        intensity += 0.2 * sum(1 for word in INTENSIFIERS if contains_keyword(normalized, word))
        intensity -= 0.1 * sum(1 for word in DIMINISHERS if contains_keyword(normalized, word))
        intensity += 0.1 * normalized.count("!")
        letters = [ch for ch in text if ch.isalpha() and ch.isascii()]
        if len(letters) >= 4 and sum(1 for ch in letters if ch.isupper()) / len(letters) > 0.5:
            intensity += 0.2
        return round(min(1.0, max(0.0, intensity)), 4)

    @staticmethod
    def _sentiment(text: str) -> float:
        normalized = normalize(text)
        positive = sum(1 for word in POSITIVE_WORDS if contains_keyword(normalized, word))
        negative = sum(1 for word in NEGATIVE_WORDS if contains_keyword(normalized, word))
        if positive + negative == 0:
            return 0.0
        return round((positive - negative) / (positive + negative), 4)

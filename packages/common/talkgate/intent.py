"""Intent resolution: exact, phonetic and semantic matching against a static library."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog
from rapidfuzz.distance import Levenshtein

from .config import TalkgateConfig
from .embeddings import EmbeddingBackend, Vector, cosine_similarity
from .models import Intent, MatchStage, RiskTier
from .normalizer import TextNormalizer

logger = structlog.get_logger(__name__)

_SLOT = re.compile(r"\{(\w+)\}")


def _compile_template(template: str) -> re.Pattern:
    parts = []
    pos = 0
    for m in _SLOT.finditer(template):
        parts.append(re.escape(template[pos:m.start()]))
        parts.append(f"(?P<{m.group(1)}>.+?)")
        pos = m.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("".join(parts))


@dataclass(frozen=True)
class IntentSpec:
    """Static description of one intent.

    ``triggers`` are templates such as ``"play artist {artist}"``; the slot
    names form the intent's fixed parameter vocabulary. ``entities`` maps the
    parameters that name something in the library to its entity kind.
    """

    name: str
    triggers: Tuple[str, ...]
    examples: Tuple[str, ...] = ()
    entities: Mapping[str, str] = field(default_factory=dict)
    critical: bool = False
    risk_tier: RiskTier = RiskTier.NORMAL
    _patterns: Tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)
    _keys: FrozenSet[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_patterns", tuple(_compile_template(t) for t in self.triggers))
        keys = frozenset(k for t in self.triggers for k in _SLOT.findall(t))
        object.__setattr__(self, "_keys", keys)
        unknown = set(self.entities) - keys
        if unknown:
            raise ValueError(f"{self.name}: entity parameters {sorted(unknown)} have no slot")

    @property
    def parameter_keys(self) -> FrozenSet[str]:
        return self._keys

    @property
    def literal_triggers(self) -> Tuple[str, ...]:
        return tuple(t for t in self.triggers if not _SLOT.search(t))

    def match(self, text: str) -> Optional[Dict[str, str]]:
        """Return slot values when ``text`` matches one of the triggers exactly."""
        for pattern in self._patterns:
            m = pattern.fullmatch(text)
            if m:
                return {k: v.strip() for k, v in m.groupdict().items()}
        return None

    def check_parameters(self, parameters: Mapping[str, str]) -> None:
        unknown = set(parameters) - self._keys
        if unknown:
            raise ValueError(f"{self.name} does not accept parameters {sorted(unknown)}")


def default_library() -> List[IntentSpec]:
    """The built-in intent library. Order matters for exact matching."""
    return [
        # Destructive commands
        IntentSpec(
            "self_destruct",
            ("self destruct", "self-destruct", "initiate self destruct"),
            examples=("activate the self destruct sequence", "blow up the ship"),
            critical=True,
        ),
        IntentSpec("eject", ("eject", "eject eject eject"), examples=("eject the pilot",), critical=True),
        IntentSpec(
            "abandon_ship",
            ("abandon ship",),
            examples=("everyone abandon the ship", "get to the escape pods"),
            critical=True,
        ),
        IntentSpec("purge", ("purge", "purge cargo"), examples=("dump the cargo hold",), critical=True),
        IntentSpec(
            "delete_playlist",
            ("delete playlist {playlist}", "delete the playlist {playlist}", "remove playlist {playlist}"),
            entities={"playlist": "playlist"},
        ),
        # Player control
        IntentSpec(
            "play_pause",
            ("play", "pause", "resume", "play pause"),
            examples=("pause the music", "resume playback", "pause the music please"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "stop",
            ("stop", "stop music", "stop the music"),
            examples=("stop playing music", "stop the player"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "next_track",
            ("next", "next track", "next song", "skip"),
            examples=("skip this song", "play the next song", "go to the next track"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "previous_track",
            ("previous", "previous track", "previous song", "go back"),
            examples=("play the previous song", "go back one track", "play the last song again"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "volume_up",
            ("volume up", "louder", "turn it up"),
            examples=("make it louder", "increase the volume", "turn the volume up"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "volume_down",
            ("volume down", "quieter", "turn it down"),
            examples=("make it quieter", "decrease the volume", "turn the volume down"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "whats_playing",
            ("what's playing", "what is playing", "what song is this"),
            examples=("what is this song", "which song is playing", "who is singing this"),
            risk_tier=RiskTier.SAFE,
        ),
        # Lights
        IntentSpec(
            "lights_off",
            ("turn off the lights", "lights off", "switch off the lights"),
            examples=("turn the lights off", "switch the lights off", "kill the lights"),
            risk_tier=RiskTier.SAFE,
        ),
        IntentSpec(
            "lights_on",
            ("turn on the lights", "lights on", "switch on the lights"),
            examples=("turn the lights on", "switch the lights on", "give me some light"),
            risk_tier=RiskTier.SAFE,
        ),
        # Library playback
        IntentSpec(
            "play_album",
            ("play album {album}", "play the album {album}"),
            entities={"album": "album"},
        ),
        IntentSpec(
            "play_artist",
            ("play artist {artist}", "play music by {artist}", "play something by {artist}"),
            entities={"artist": "artist"},
        ),
        IntentSpec(
            "play_playlist",
            ("play playlist {playlist}", "play the playlist {playlist}", "play smartlist {playlist}"),
            entities={"playlist": "playlist"},
        ),
        IntentSpec(
            "play_song",
            ("play song {song}", "play the song {song}", "play track {song}", "play {song}"),
            entities={"song": "song"},
        ),
    ]


def phonetic_fold(text: str) -> str:
    """Collapse spellings that sound alike so recognizer slips compare close."""
    s = re.sub(r"[^a-z ]", "", text.lower())
    for src, dst in (
        ("ph", "f"), ("ck", "k"), ("qu", "kw"), ("wh", "w"), ("gh", "g"),
        ("dg", "j"), ("kn", "n"), ("x", "ks"), ("z", "s"),
    ):
        s = s.replace(src, dst)
    s = re.sub(r"c(?=[eiy])", "s", s)
    s = s.replace("c", "k")
    return re.sub(r"(.)\1+", r"\1", s)


class IntentResolver:
    """Maps transcript text to at most one Intent.

    Stages run in order and the first that clears its threshold wins:
    exact template match, phonetic similarity for critical commands, then
    embedding similarity against example utterances. The semantic stage is
    skipped when no embedder is configured.
    """

    def __init__(
        self,
        library: Optional[Sequence[IntentSpec]] = None,
        embedder: Optional[EmbeddingBackend] = None,
        normalizer: Optional[TextNormalizer] = None,
        high_risk_commands: Iterable[str] = (),
        phonetic_threshold: float = 0.7,
        semantic_threshold: float = 0.75,
    ):
        self.library: List[IntentSpec] = list(library if library is not None else default_library())
        names = [spec.name for spec in self.library]
        if len(names) != len(set(names)):
            raise ValueError("intent names must be unique")
        self._by_name = {spec.name: spec for spec in self.library}
        self.embedder = embedder
        self.normalizer = normalizer or TextNormalizer()
        self.high_risk_commands = frozenset(n.lower() for n in high_risk_commands)
        self.phonetic_threshold = phonetic_threshold
        self.semantic_threshold = semantic_threshold
        self._example_vectors: Optional[List[Tuple[IntentSpec, Vector]]] = None

    @classmethod
    def from_config(
        cls,
        config: TalkgateConfig,
        embedder: Optional[EmbeddingBackend] = None,
        library: Optional[Sequence[IntentSpec]] = None,
    ) -> IntentResolver:
        return cls(
            library=library,
            embedder=embedder,
            normalizer=TextNormalizer(config.corrections),
            high_risk_commands=config.high_risk_commands,
            phonetic_threshold=config.phonetic_threshold,
            semantic_threshold=config.semantic_threshold,
        )

    def apply_config(self, config: TalkgateConfig) -> None:
        self.normalizer = TextNormalizer(config.corrections)
        self.high_risk_commands = frozenset(n.lower() for n in config.high_risk_commands)
        self.phonetic_threshold = config.phonetic_threshold
        self.semantic_threshold = config.semantic_threshold

    def spec(self, name: str) -> Optional[IntentSpec]:
        return self._by_name.get(name)

    def classify_risk(self, spec: IntentSpec) -> RiskTier:
        if spec.name.lower() in self.high_risk_commands:
            return RiskTier.HIGH_RISK
        return spec.risk_tier

    async def resolve(self, text: str) -> Optional[Intent]:
        normalized = self.normalizer.normalize(text)
        if not normalized:
            return None

        intent = self._match_exact(normalized) or self._match_phonetic(normalized)
        if intent is None:
            intent = await self._match_semantic(normalized)

        if intent is None:
            logger.debug("No intent matched", text=normalized)
        else:
            logger.info(
                "Intent resolved",
                intent=intent.name,
                stage=intent.matched_by.value,
                confidence=round(intent.confidence, 3),
                risk=intent.risk_tier.value,
            )
        return intent

    def _build(
        self,
        spec: IntentSpec,
        stage: MatchStage,
        confidence: float,
        utterance: str,
        parameters: Optional[Mapping[str, str]] = None,
    ) -> Intent:
        params = dict(parameters or {})
        spec.check_parameters(params)
        return Intent(
            name=spec.name,
            parameters=params,
            confidence=confidence,
            risk_tier=self.classify_risk(spec),
            matched_by=stage,
            utterance=utterance,
        )

    def _match_exact(self, text: str) -> Optional[Intent]:
        for spec in self.library:
            params = spec.match(text)
            if params is not None:
                return self._build(spec, MatchStage.EXACT, 1.0, text, params)
        return None

    def _match_phonetic(self, text: str) -> Optional[Intent]:
        folded = phonetic_fold(text)
        best: Optional[Tuple[float, IntentSpec]] = None
        for spec in self.library:
            if not spec.critical:
                continue
            for trigger in spec.literal_triggers:
                score = max(
                    Levenshtein.normalized_similarity(text, trigger),
                    Levenshtein.normalized_similarity(folded, phonetic_fold(trigger)),
                )
                if best is None or score > best[0]:
                    best = (score, spec)

        if best is None or best[0] < self.phonetic_threshold:
            return None
        return self._build(best[1], MatchStage.PHONETIC, best[0], text)

    async def _match_semantic(self, text: str) -> Optional[Intent]:
        if self.embedder is None:
            return None
        examples = await self._examples()
        if not examples:
            return None
        [query] = await self.embedder.embed([text])

        best_score, best_spec = 0.0, None
        for spec, vector in examples:
            score = cosine_similarity(query, vector)
            if score > best_score:
                best_score, best_spec = score, spec

        if best_spec is None or best_score < self.semantic_threshold:
            return None
        return self._build(best_spec, MatchStage.SEMANTIC, best_score, text)

    async def _examples(self) -> List[Tuple[IntentSpec, Vector]]:
        # Parameterised intents cannot be filled from a similarity match
        if self._example_vectors is None:
            pairs = [
                (spec, example)
                for spec in self.library
                if not spec.parameter_keys
                for example in (spec.examples + spec.literal_triggers)
            ]
            vectors = await self.embedder.embed([example for _, example in pairs]) if pairs else []
            self._example_vectors = [(spec, vec) for (spec, _), vec in zip(pairs, vectors)]
        return self._example_vectors

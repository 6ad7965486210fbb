"""Complaint classification into civic domains.

Two interchangeable providers implement the classifier role:
- KeywordClassifier: deterministic keyword rules, no external calls
- LLMClassifier: OpenAI-compatible LLM through LangChain

Both always return a domain from the city's configured list, a confidence
in [0, 1] and a non-empty reasoning string. A weak match is a normal,
low-confidence result rather than an error.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from src.civicflow.agents.base import Agent, AgentRequest, AgentType
from src.civicflow.agents.llm import LLMProvider, clamp_unit
from src.civicflow.agents.models import Classification, DomainAlternative


logger = logging.getLogger(__name__)


FALLBACK_DOMAIN = "Other"

# Keywords per default domain; matched on word starts, case-insensitive
DOMAIN_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "Roads & Potholes": (
        "pothole", "road damage", "damaged road", "asphalt", "tarmac",
        "speed breaker", "cave-in", "road repair", "footpath", "sidewalk",
    ),
    "Electricity/Street Lighting": (
        "streetlight", "street light", "street lamp", "lamp post", "light pole",
        "power cut", "power outage", "electricity", "transformer", "live wire",
    ),
    "Water Supply": (
        "water supply", "no water", "tap water", "pipeline", "water pressure",
        "contaminated water", "drinking water", "water leak",
    ),
    "Sewage & Drainage": (
        "sewage", "sewer", "drain", "manhole", "overflow", "waterlogging",
        "clogged",
    ),
    "Waste Management": (
        "garbage", "trash", "waste", "litter", "dumping", "rubbish", "bin",
    ),
    "Public Transport": (
        "bus stop", "bus service", "metro", "train station", "bus shelter",
        "public transport",
    ),
    "Traffic & Parking": (
        "traffic signal", "traffic light", "parking", "traffic jam",
        "congestion", "illegal parking", "signal not working",
    ),
    "Parks & Public Spaces": (
        "park", "playground", "bench", "garden", "public toilet",
    ),
    "Public Health & Sanitation": (
        "mosquito", "dengue", "sanitation", "unhygienic", "disease", "fogging",
    ),
    "Noise Pollution": (
        "noise", "loudspeaker", "honking", "loud music",
    ),
    "Air Pollution": (
        "smoke", "burning", "air quality", "dust", "fumes",
    ),
    "Building & Construction": (
        "construction", "building collapse", "unsafe building", "debris",
        "illegal construction",
    ),
    "Stray Animals": (
        "stray dog", "stray cattle", "stray animal", "dog bite", "monkey",
    ),
    "Public Safety": (
        "unsafe", "harassment", "theft", "crime", "fire hazard",
    ),
    "Encroachment": (
        "encroachment", "hawker", "vendor", "blocked footpath",
    ),
    "Tax & Billing": (
        "property tax", "water bill", "billing", "overcharged", "receipt",
    ),
}


def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(keyword), re.IGNORECASE)


_COMPILED_KEYWORDS: Dict[str, List[re.Pattern]] = {
    domain: [_keyword_pattern(k) for k in keywords]
    for domain, keywords in DOMAIN_KEYWORDS.items()
}


def fallback_domain(domains: Sequence[str]) -> str:
    """Domain used when nothing matches: "Other" if configured, else the last domain."""
    if FALLBACK_DOMAIN in domains:
        return FALLBACK_DOMAIN
    return domains[-1]


class KeywordClassifier(Agent):
    """Deterministic keyword classifier.

    Counts keyword hits per configured domain. Confidence grows with the
    number of hits for the winner and shrinks with the hits of the
    runner-up, so ambiguous complaints come out below typical thresholds.

    Attributes:
        keywords: Keyword table per domain; cities with custom domains can
            supply their own.
    """

    agent_type = AgentType.CLASSIFIER

    def __init__(self, keywords: Optional[Mapping[str, Sequence[str]]] = None):
        if keywords is None:
            self._patterns = _COMPILED_KEYWORDS
        else:
            self._patterns = {
                domain: [_keyword_pattern(k) for k in words]
                for domain, words in keywords.items()
            }

    async def _run(self, request: AgentRequest) -> Classification:
        return self.classify_issue(
            request.issue.text,
            {"language": request.issue.language, "domains": request.domains},
        )

    def classify_issue(self, complaint: str, metadata: Dict[str, Any]) -> Classification:
        domains: List[str] = list(metadata.get("domains") or [FALLBACK_DOMAIN])

        hits: List[Tuple[str, int, List[str]]] = []
        for domain in domains:
            matched = [
                p.pattern for p in self._patterns.get(domain, []) if p.search(complaint)
            ]
            if matched:
                hits.append((domain, len(matched), matched))

        hits.sort(key=lambda h: h[1], reverse=True)

        if not hits:
            domain = fallback_domain(domains)
            return Classification(
                domain=domain,
                confidence=0.2,
                reasoning=(
                    f"No domain keywords matched the complaint; "
                    f"assigned to '{domain}' for manual review."
                ),
            )

        best_domain, best_hits, best_matched = hits[0]
        runner_up_hits = hits[1][1] if len(hits) > 1 else 0
        confidence = 0.55 + 0.15 * best_hits - 0.1 * runner_up_hits
        confidence = round(max(0.05, min(0.95, confidence)), 2)

        alternatives = [
            DomainAlternative(domain=d, confidence=round(min(0.5, 0.15 * n), 2))
            for d, n, _ in hits[1:4]
        ]

        keywords = ", ".join(_readable(p) for p in best_matched)
        reasoning = (
            f"Matched {best_hits} keyword(s) for '{best_domain}' ({keywords})."
        )
        if runner_up_hits:
            reasoning += f" Also matched {hits[1][0]} ({runner_up_hits})."

        return Classification(
            domain=best_domain,
            confidence=confidence,
            reasoning=reasoning,
            alternatives=alternatives,
        )


def _readable(pattern: str) -> str:
    return pattern.replace("\\b", "").replace("\\", "")


CLASSIFICATION_SYSTEM_PROMPT = """You are a municipal complaint classifier. Assign the complaint to exactly one civic domain from the list the user provides.

You MUST respond with valid JSON only. Do not include any text before or after the JSON object.

Respond with this exact JSON structure:
{
  "domain": "one domain from the list, copied exactly",
  "confidence": 0.0-1.0,
  "reasoning": "short explanation of the decision",
  "alternatives": [{"domain": "another listed domain", "confidence": 0.0-1.0}]
}"""


def _build_classification_prompt(complaint: str, language: str, domains: Sequence[str]) -> str:
    domain_lines = "\n".join(f"- {d}" for d in domains)
    text = complaint if complaint else "(no description provided)"
    return f"""Classify this civic complaint.

**Language:** {language}

**Domains:**
{domain_lines}

**Complaint:**
{text}

Provide your analysis as JSON."""


class LLMClassifier(Agent):
    """LLM-backed classifier.

    Domains outside the configured list are replaced by the fallback domain
    with confidence capped at 0.3, so the policy flags them for review.
    """

    agent_type = AgentType.CLASSIFIER

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def _run(self, request: AgentRequest) -> Classification:
        return await self.classify_issue(
            request.issue.text,
            {"language": request.issue.language, "domains": request.domains},
        )

    async def classify_issue(self, complaint: str, metadata: Dict[str, Any]) -> Classification:
        domains: List[str] = list(metadata.get("domains") or [FALLBACK_DOMAIN])
        data = await self.provider.complete_json(
            self.agent_type.value,
            CLASSIFICATION_SYSTEM_PROMPT,
            _build_classification_prompt(
                complaint, metadata.get("language", "en"), domains
            ),
        )
        return normalize_llm_classification(data, domains)


def normalize_llm_classification(
    data: Dict[str, Any], domains: Sequence[str]
) -> Classification:
    """Force a raw LLM reply into a valid Classification for the given domains."""
    domain = str(data.get("domain", "")).strip()
    confidence = clamp_unit(data.get("confidence"))
    reasoning = str(data.get("reasoning") or "").strip()

    if domain not in domains:
        logger.warning(
            "LLM returned a domain outside the configured list",
            extra={"received_domain": domain},
        )
        replacement = fallback_domain(domains)
        reasoning = (
            f"Model proposed unlisted domain '{domain}'; assigned '{replacement}'. "
            + reasoning
        ).strip()
        domain = replacement
        confidence = min(confidence, 0.3)

    if not reasoning:
        reasoning = "Model returned no reasoning."

    alternatives = []
    raw_alternatives = data.get("alternatives", [])
    if isinstance(raw_alternatives, list):
        for alt in raw_alternatives:
            if not isinstance(alt, dict):
                continue
            alt_domain = str(alt.get("domain", ""))
            if alt_domain in domains and alt_domain != domain:
                alternatives.append(
                    DomainAlternative(
                        domain=alt_domain,
                        confidence=clamp_unit(alt.get("confidence")),
                    )
                )

    return Classification(
        domain=domain,
        confidence=confidence,
        reasoning=reasoning,
        alternatives=alternatives,
    )

# spreadguard/debate.py
import json
import os
import re
from typing import Any, Dict, Optional

import aiohttp

from .models import (
    AllocationResult,
    DebateResult,
    Decision,
    Opportunity,
    Perspective,
    RiskAssessmentResult,
)

PERSPECTIVES = ("bullish", "bearish", "neutral")
REASON_LIMITS = {"bullish": 3, "bearish": 3, "neutral": 2}
JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = """You are a panel of three crypto arbitrage analysts.
BULLISH argues for taking the trade, BEARISH argues against it, NEUTRAL weighs both.
Reply with JSON only:
{"bullish": {"score": 0-1, "reasons": ["..."]},
 "bearish": {"score": 0-1, "reasons": ["..."]},
 "neutral": {"score": 0-1, "reasons": ["..."]}}"""


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def median_consensus(bullish: float, bearish: float, neutral: float) -> float:
    """Median of (bullish, 1 - bearish, neutral). One extreme voice cannot flip the outcome."""
    return sorted([bullish, 1 - bearish, neutral])[1]


def build_context(opportunity: Opportunity, risk: RiskAssessmentResult, allocation: AllocationResult) -> Dict[str, Any]:
    return {
        "symbol": opportunity.symbol,
        "action": opportunity.action,
        "spread_pct": opportunity.spread_pct,
        "estimated_gross_profit_pct": opportunity.estimated_gross_profit_pct,
        "persistence_count": opportunity.persistence_count,
        "risk_score": risk.risk_score,
        "slippage_pct": risk.slippage_pct,
        "volatility_pct": risk.volatility_pct,
        "fillable_qty": risk.liquidity_estimate.fillable_qty,
        "allocation_pct": allocation.allocation_pct,
        "allocated_amount": allocation.allocated_amount,
    }


class PerspectiveProvider:
    """
    Produces bullish/bearish/neutral perspectives for a trade context.
    Implementations raise on any failure; the engine falls back.
    """
    name = "base"

    async def get_perspectives(self, context: Dict[str, Any]) -> Dict[str, Perspective]:
        raise NotImplementedError

    async def close(self):
        pass


class FallbackPerspectiveProvider(PerspectiveProvider):
    """Pure arithmetic on spread and risk score. Never fails."""
    name = "fallback"

    async def get_perspectives(self, context: Dict[str, Any]) -> Dict[str, Perspective]:
        return self.compute(context["spread_pct"], context["risk_score"])

    @staticmethod
    def compute(spread_pct: float, risk_score: float) -> Dict[str, Perspective]:
        spread_score = min(1.0, spread_pct / 3)
        risk_penalty = risk_score / 100
        return {
            "bullish": Perspective(
                score=clamp01(spread_score - 0.3 * risk_penalty),
                reasons=[f"Spread of {spread_pct:.2f}% offers profit potential"],
            ),
            "bearish": Perspective(
                score=clamp01(risk_penalty),
                reasons=[f"Risk score of {risk_score:.0f} indicates potential issues"],
            ),
            "neutral": Perspective(
                score=0.5,
                reasons=["Fallback analysis - LLM unavailable"],
            ),
        }


class GroqPerspectiveProvider(PerspectiveProvider):
    """
    LLM panel over Groq's OpenAI-compatible chat endpoint.
    """
    name = "groq"

    def __init__(self, api_key: str, cfg: dict, logger, timeout_s: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.api_key = api_key
        self.cfg = cfg
        self.logger = logger
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None
        self.last_raw = ""

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _prompt(self, context: Dict[str, Any]) -> str:
        return (
            f"Opportunity: {context['symbol']} {context['action']}\n"
            f"Spread: {context['spread_pct']:.3f}% (est. gross profit {context['estimated_gross_profit_pct']:.3f}%)\n"
            f"Risk score: {context['risk_score']:.0f}/100, slippage {context['slippage_pct']:.3f}%, "
            f"volatility {context['volatility_pct']:.3f}%\n"
            f"Allocation: ${context['allocated_amount']:,.2f} ({context['allocation_pct'] * 100:.0f}% of cash)\n"
            "Score each perspective between 0 and 1."
        )

    async def get_perspectives(self, context: Dict[str, Any]) -> Dict[str, Perspective]:
        session = self._ensure_session()
        payload = {
            "model": self.cfg['model'],
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._prompt(context)},
            ],
            "temperature": self.cfg['temperature'],
            "max_tokens": self.cfg['max_tokens'],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        async with session.post(self.cfg['api_url'], json=payload, headers=headers) as resp:
            resp.raise_for_status()
            body = await resp.json()

        content = body["choices"][0]["message"]["content"]
        self.last_raw = content
        return self.parse(content)

    @staticmethod
    def parse(content: str) -> Dict[str, Perspective]:
        """Pulls the first {...} block out of the reply. Raises ValueError when malformed."""
        match = JSON_BLOCK.search(content or "")
        if not match:
            raise ValueError("No JSON object in LLM reply")
        data = json.loads(match.group(0))

        perspectives: Dict[str, Perspective] = {}
        for name in PERSPECTIVES:
            block = data.get(name)
            if not isinstance(block, dict):
                raise ValueError(f"Missing '{name}' perspective")
            score = float(block.get("score") or 0)
            reasons = block.get("reasons") or []
            if not isinstance(reasons, list):
                reasons = [str(reasons)]
            perspectives[name] = Perspective(
                score=clamp01(score),
                reasons=[str(r) for r in reasons[:REASON_LIMITS[name]]],
            )
        return perspectives

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


def build_perspective_provider(config: dict, logger) -> PerspectiveProvider:
    """
    'fallback' always uses arithmetic; 'groq' and 'auto' use the LLM when
    an API key is present in the configured environment variable.
    """
    cfg = config['debate']
    provider = cfg.get('provider', 'auto')
    if provider == 'fallback':
        return FallbackPerspectiveProvider()

    api_key = os.environ.get(cfg.get('api_key_env', 'GROQ_API_KEY'))
    if not api_key:
        if provider == 'groq':
            logger.warning(f"⚠️ {cfg.get('api_key_env')} not set, debate runs on fallback arithmetic")
        return FallbackPerspectiveProvider()

    timeout_s = config['performance']['network_timeout_ms'] / 1000 * 2
    return GroqPerspectiveProvider(api_key, cfg, logger, timeout_s=timeout_s)


class DebateEngine:
    """
    Turns three perspectives into an execute/wait decision by median consensus.
    """
    def __init__(self, provider: PerspectiveProvider, config: dict, logger):
        self.provider = provider
        self.fallback = FallbackPerspectiveProvider()
        self.threshold = config['debate']['threshold']
        self.logger = logger

    async def decide(
        self,
        opportunity: Opportunity,
        risk: RiskAssessmentResult,
        allocation: AllocationResult,
        threshold: Optional[float] = None,
    ) -> DebateResult:
        threshold = self.threshold if threshold is None else threshold
        context = build_context(opportunity, risk, allocation)

        raw = ""
        try:
            perspectives = await self.provider.get_perspectives(context)
            bullish, bearish, neutral = (perspectives[name] for name in PERSPECTIVES)
            for p in (bullish, bearish, neutral):
                if not 0.0 <= p.score <= 1.0:
                    raise ValueError(f"perspective score out of range: {p.score}")
            raw = getattr(self.provider, "last_raw", "")
        except Exception as e:
            self.logger.warning(f"Debate provider '{self.provider.name}' failed, using fallback: {e}")
            perspectives = await self.fallback.get_perspectives(context)
            bullish, bearish, neutral = (perspectives[name] for name in PERSPECTIVES)

        score = median_consensus(bullish.score, bearish.score, neutral.score)
        decision = Decision.EXECUTE if score >= threshold else Decision.WAIT

        self.logger.debug(
            f"[Debate] {opportunity.symbol} bull={bullish.score:.2f} bear={bearish.score:.2f} "
            f"neutral={neutral.score:.2f} -> {score:.2f} {decision.value}"
        )
        return DebateResult(
            bullish=bullish,
            bearish=bearish,
            neutral=neutral,
            final_decision_score=score,
            decision=decision,
            raw=raw,
        )

    async def close(self):
        await self.provider.close()

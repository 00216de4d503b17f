"""OpenAI client producing narrative summaries of drift checks and reports."""

import json
from dataclasses import dataclass, field
from typing import Any

import openai
import structlog

from bookmate.config import get_settings
from bookmate.errors import ConfigurationError, InsightsError, QuotaExceededError, ValidationError

logger = structlog.get_logger(__name__)

AUDITOR_PROMPT = """You are a financial auditor analyzing balance drift.

Total Accounts: {total}
Failed Checks (>{warn:g} THB drift): {failed_count}
Warning Checks (1-{warn:g} THB drift): {warn_count}
Total Drift: {drift_total:.2f} THB
Overall Status: {status}
{failed_block}{warn_block}
Provide a concise 2-3 sentence executive summary of the financial health and any \
recommended actions. Be direct and actionable."""


@dataclass
class InsightResponse:
    """Narrative returned by the model."""

    content: str
    model: str
    usage: dict[str, int]


def build_drift_prompt(
    checks: list[dict[str, Any]], totals: dict[str, Any], warn_threshold: float
) -> str:
    """Render the auditor prompt from serialized drift checks."""
    failed = [c for c in checks if c.get("status") == "FAIL"]
    warned = [c for c in checks if c.get("status") == "WARN"]

    def _block(title: str, rows: list[dict[str, Any]]) -> str:
        if not rows:
            return ""
        lines = "\n".join(f"- {c['account']}: {float(c['drift']):.2f} THB drift" for c in rows)
        return f"\n{title}:\n{lines}\n"

    return AUDITOR_PROMPT.format(
        total=len(checks),
        warn=warn_threshold,
        failed_count=len(failed),
        warn_count=len(warned),
        drift_total=float(totals.get("drift_total", 0)),
        status=totals.get("status", "OK"),
        failed_block=_block("Failed Accounts", failed),
        warn_block=_block("Warning Accounts", warned),
    )


# === Report insights ===


@dataclass(frozen=True)
class TonePreset:
    """Voice of the report narrative."""

    system_prompt: str
    style: str
    focus_areas: tuple[str, ...]
    language: str
    temperature: float


TONE_PRESETS: dict[str, TonePreset] = {
    "standard": TonePreset(
        system_prompt="You are a professional financial analyst providing clear, balanced insights.",
        style="Professional, informative, and objective",
        focus_areas=("Key financial metrics", "Trends and patterns", "Notable changes", "Actionable insights"),
        language="Use clear business terminology. Maintain a neutral, professional tone.",
        temperature=0.6,
    ),
    "investor": TonePreset(
        system_prompt="You are a financial advisor preparing reports for investors and stakeholders.",
        style="Formal, data-driven, and strategic",
        focus_areas=(
            "ROI and profitability metrics",
            "Growth indicators",
            "Risk factors",
            "Investment opportunities",
            "Competitive positioning",
        ),
        language=(
            "Use formal financial terminology. Focus on numbers, percentages, and strategic "
            "implications. Be concise and fact-based."
        ),
        temperature=0.5,
    ),
    "casual": TonePreset(
        system_prompt="You are a friendly financial advisor explaining complex topics in simple terms.",
        style="Conversational, approachable, and simplified",
        focus_areas=(
            "What the numbers mean in plain language",
            "Practical next steps",
            "Areas of concern explained simply",
            "Positive developments",
        ),
        language=(
            "Use everyday language. Avoid jargon. Break down complex concepts. "
            "Be encouraging and supportive."
        ),
        temperature=0.7,
    ),
    "executive": TonePreset(
        system_prompt="You are providing executive summaries for C-level decision makers.",
        style="Brief, strategic, and action-oriented",
        focus_areas=(
            "Bottom-line impact",
            "Strategic implications",
            "Critical issues requiring attention",
            "High-level recommendations",
        ),
        language=(
            "Be extremely concise. Lead with impact. Use bullet points. "
            "Focus on decisions and actions needed."
        ),
        temperature=0.5,
    ),
}

REPORT_INSIGHTS_MAX_TOKENS = 1500

# Section name -> (payload key, max points kept)
INSIGHT_SECTIONS = {
    "executive_summary": ("executiveSummary", 4),
    "key_trends": ("keyTrends", 4),
    "risks": ("risks", 3),
    "opportunities": ("opportunities", 3),
}


def get_tone(tone: str) -> TonePreset:
    preset = TONE_PRESETS.get(tone)
    if preset is None:
        raise ValidationError(f"Unknown tone: {tone}", details={"valid": list(TONE_PRESETS)})
    return preset


@dataclass
class OrganizationProfile:
    """Business context added to report prompts."""

    business_name: str = ""
    sector: str = ""
    key_properties: list[str] = field(default_factory=list)
    goals: list[str] = field(default_factory=list)


@dataclass
class ReportInsights:
    """Narrative sections generated for a report."""

    executive_summary: list[str] = field(default_factory=list)
    key_trends: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    opportunities: list[str] = field(default_factory=list)
    tone: str = "standard"

    @classmethod
    def from_payload(cls, payload: dict[str, Any], tone: str = "standard") -> "ReportInsights":
        """Keep the known sections, trimmed to their point limits."""
        sections = {}
        for attr, (key, limit) in INSIGHT_SECTIONS.items():
            value = payload.get(key)
            sections[attr] = [str(v) for v in value[:limit]] if isinstance(value, list) else []
        return cls(tone=tone, **sections)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            key: getattr(self, attr) for attr, (key, _) in INSIGHT_SECTIONS.items()
        }
        data["tone"] = self.tone
        return data


def build_report_system_prompt(tone: str = "standard", profile: OrganizationProfile | None = None) -> str:
    """System prompt for report insights in the given tone."""
    preset = get_tone(tone)
    prompt = f"""You are a financial analyst providing insights for BookMate, a property management \
financial platform.

CRITICAL RULES:
1. NEVER recalculate or alter the provided numbers
2. Only provide narrative interpretation and context
3. Keep insights concise (2-3 sentences max per point)
4. Focus on actionable takeaways
5. Return ONLY valid JSON in the exact format specified
6. If data is missing or unavailable, acknowledge it rather than fabricating

{preset.system_prompt}

STYLE: {preset.style}
FOCUS AREAS: {', '.join(preset.focus_areas)}
LANGUAGE GUIDELINES: {preset.language}"""

    if profile is None:
        return prompt

    lines = []
    if profile.business_name:
        lines.append(f"- Business: {profile.business_name}")
    if profile.sector:
        lines.append(f"- Sector: {profile.sector}")
    if profile.key_properties:
        lines.append(f"- Key Properties: {', '.join(profile.key_properties)}")
    if profile.goals:
        lines.append(f"- Goals: {', '.join(profile.goals)}")
    if lines:
        prompt += "\n\nORGANIZATION CONTEXT:\n" + "\n".join(lines)
        prompt += (
            "\n\nUse this context to make insights more relevant, but NEVER fabricate data "
            "about these properties or goals."
        )
    return prompt


def _change(current: float, previous: float) -> str:
    pct = (current - previous) / previous * 100
    return f"{pct:.1f}% {'increase' if pct >= 0 else 'decrease'}"


def build_report_prompt(report: dict[str, Any], previous: dict[str, Any] | None = None) -> str:
    """User prompt from a serialized report.

    Args:
        report: Output of ``Report.to_dict()``.
        previous: Summary of the previous period (``totalRevenue``,
            ``totalExpenses``), used for trend lines when present.
    """
    period = report["period"]
    summary = report["summary"]
    prompt = f"""Analyze this financial report for {period['label']} ({period['start']} to {period['end']}):

FINANCIAL METRICS (DO NOT RECALCULATE):
- Total Revenue: {summary['totalRevenue']:,.2f}
- Total Expenses: {summary['totalExpenses']:,.2f}
- Net Profit: {summary['netProfit']:,.2f}
- Profit Margin: {summary['profitMargin']:.1f}%
- Cash Position: {summary['cashPosition']:,.2f}
"""

    if previous and previous.get("totalRevenue"):
        prompt += "\nTRENDS vs PREVIOUS PERIOD:\n"
        prompt += f"- Revenue: {_change(summary['totalRevenue'], previous['totalRevenue'])}\n"
        if previous.get("totalExpenses"):
            prompt += f"- Expenses: {_change(summary['totalExpenses'], previous['totalExpenses'])}\n"

    expenses = report.get("expenses", {})
    top = sorted(
        expenses.get("overhead", []) + expenses.get("propertyPerson", []),
        key=lambda row: row["amount"],
        reverse=True,
    )[:5]
    if top:
        lines = "\n".join(f"- {row['category']}: {row['amount']:,.2f}" for row in top)
        prompt += f"\nTOP EXPENSE CATEGORIES:\n{lines}\n"

    prompt += """
Provide insights in JSON format with these exact keys:
{
  "executiveSummary": ["point 1", "point 2", "point 3"],
  "keyTrends": ["trend 1", "trend 2", "trend 3"],
  "risks": ["risk 1", "risk 2"],
  "opportunities": ["opportunity 1", "opportunity 2"]
}

Guidelines:
- Executive Summary: High-level overview and key takeaways (3-4 points)
- Key Trends: Notable patterns in revenue, expenses, or profitability (2-4 points)
- Risks: Potential concerns or areas requiring attention (2-3 points)
- Opportunities: Areas for improvement or growth (2-3 points)

Keep each point concise (2-3 sentences). Be specific and actionable."""
    return prompt


def is_quota_error(error: openai.APIError) -> bool:
    """True for rate limiting or an exhausted OpenAI quota."""
    if isinstance(error, openai.RateLimitError):
        return True
    if getattr(error, "code", None) == "insufficient_quota":
        return True
    message = str(error)
    return "429" in message or "quota" in message


class InsightsClient:
    """Thin wrapper around the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.openai_api_key.get_secret_value()
        self._model = model or settings.insights_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature
        self._client = openai.OpenAI(api_key=self._api_key) if self._api_key else None
        self._logger = logger.bind(client="openai", model=self._model)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _request_kwargs(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> dict[str, Any]:
        # GPT-5+ models take max_completion_tokens and nano models only the default temperature
        is_gpt5_plus = self._model.startswith("gpt-5") or self._model.startswith("o3")
        is_nano = "nano" in self._model
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        kwargs: dict[str, Any] = {"model": self._model, "messages": messages}
        if not is_nano:
            kwargs["temperature"] = self._temperature if temperature is None else temperature
        limit = max_tokens or self._max_tokens
        if is_gpt5_plus:
            kwargs["max_completion_tokens"] = limit
        else:
            kwargs["max_tokens"] = limit
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    async def complete(self, prompt: str, **options: Any) -> InsightResponse:
        """Send a single-turn prompt.

        Args:
            prompt: User message.
            **options: ``system``, ``temperature``, ``max_tokens`` or
                ``json_mode`` overrides.

        Raises:
            RuntimeError: If no API key is configured.
            openai.APIError: On API failure.
        """
        if self._client is None:
            raise RuntimeError("OPENAI_API_KEY is not configured")

        try:
            response = self._client.chat.completions.create(**self._request_kwargs(prompt, **options))
        except openai.APIError as e:
            self._logger.error("api_error", error=str(e))
            raise

        content = response.choices[0].message.content or ""
        usage = {
            "input_tokens": response.usage.prompt_tokens if response.usage else 0,
            "output_tokens": response.usage.completion_tokens if response.usage else 0,
        }
        self._logger.info("insight_generated", **usage)
        return InsightResponse(content=content.strip(), model=self._model, usage=usage)

    async def summarize_drift(
        self,
        checks: list[dict[str, Any]],
        totals: dict[str, Any],
        warn_threshold: float | None = None,
    ) -> str | None:
        """Return an executive summary of drift checks, or None when unavailable.

        The summary is advisory: API failures are logged and yield None so the
        reconciliation result is still returned.
        """
        if not self.enabled:
            return None

        threshold = warn_threshold if warn_threshold is not None else get_settings().drift_warn_threshold
        prompt = build_drift_prompt(checks, totals, threshold)
        try:
            response = await self.complete(prompt)
        except openai.APIError:
            return None
        return response.content or None

    async def report_insights(
        self,
        report: dict[str, Any],
        tone: str = "standard",
        profile: OrganizationProfile | None = None,
        previous: dict[str, Any] | None = None,
    ) -> ReportInsights:
        """Generate narrative insights for a serialized report.

        Unlike the drift summary these are requested explicitly, so failures
        are raised rather than swallowed.

        Raises:
            ValidationError: Unknown tone, or the report lacks period or summary.
            ConfigurationError: No API key is configured.
            QuotaExceededError: OpenAI rate limited the request or the quota is used up.
            InsightsError: Any other API failure or an unparseable reply.
        """
        preset = get_tone(tone)
        if not report.get("period") or not report.get("summary"):
            raise ValidationError("Missing required fields: period and summary")
        if not self.enabled:
            raise ConfigurationError("OPENAI_API_KEY is not configured")

        try:
            response = await self.complete(
                build_report_prompt(report, previous),
                system=build_report_system_prompt(tone, profile),
                temperature=preset.temperature,
                max_tokens=REPORT_INSIGHTS_MAX_TOKENS,
                json_mode=True,
            )
        except openai.APIError as e:
            if is_quota_error(e):
                raise QuotaExceededError(
                    "OpenAI API quota exceeded",
                    details={"quotaExceeded": True, "reason": str(e)},
                ) from e
            raise InsightsError(
                "Failed to generate AI insights",
                details={"quotaExceeded": False, "reason": str(e)},
            ) from e

        try:
            payload = json.loads(response.content)
        except ValueError as e:
            raise InsightsError("AI insights reply was not valid JSON") from e
        if not isinstance(payload, dict):
            raise InsightsError("AI insights reply was not a JSON object")

        insights = ReportInsights.from_payload(payload, tone)
        self._logger.info(
            "report_insights_generated",
            tone=tone,
            points=sum(len(getattr(insights, attr)) for attr in INSIGHT_SECTIONS),
        )
        return insights

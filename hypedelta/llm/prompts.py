"""Prompt templates for all analysis tasks."""

SYSTEM_ANALYST = """You are an analyst tracking AI research discourse for a technical audience.
Separate substantive claims from noise. Be precise about who said what.
Never fabricate quotes or claims. Respond with JSON only unless told otherwise."""

TOPIC_GUIDE = """\
- scaling: scaling laws, compute, training efficiency
- reasoning: LLM reasoning, chain-of-thought, planning
- agents: AI agents, tool use, autonomy
- safety: safety, alignment, control
- interpretability: mechanistic interpretability, understanding models
- multimodal: vision, audio, video models
- rlhf: RLHF, preference learning, constitutional methods
- robotics: embodied AI, robotics
- benchmarks: evals, benchmarks, capability measurement
- infrastructure: training infra, chips, hardware
- policy: policy, regulation, governance
- general: general AI commentary
- other: anything else"""

FILTER_ITEMS = """\
Assess each item below for relevance to understanding AI research progress, \
capabilities, limitations, or field direction.

ITEMS:
{items}

For each item give:
- relevanceScore (0.0-1.0): 0-0.3 off-topic or promotional, 0.3-0.6 tangential, \
0.6-0.8 relevant, 0.8-1.0 substantive claims or research insight
- primaryTopic: exactly one of
""" + TOPIC_GUIDE + """
- contentType: research-hint | prediction | opinion | critique | announcement | discussion | noise
- isSubstantive: true if it makes actual claims or arguments (not just links or reactions)
- authorCategory: lab-researcher (works at a major AI lab) | critic (credentialed skeptic) | \
academic | independent | journalist | unknown
- briefSummary: one sentence

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "assessments": [
        {{
            "itemIndex": 0,
            "relevanceScore": 0.85,
            "isSubstantive": true,
            "primaryTopic": "reasoning",
            "contentType": "research-hint",
            "authorCategory": "lab-researcher",
            "briefSummary": "One sentence summary"
        }}
    ]
}}"""

FILTER_ITEM = """\
[{index}] {author} via {source} ({published})
{body}"""

EXTRACT_CLAIMS = """\
Extract the substantive claims from each item below. A claim states something \
about AI capabilities, limitations or progress, predicts future developments, \
hints at unreleased work, takes a position on the field's direction, or \
critiques someone else's claim. "Interesting paper" is not a claim.

ITEMS:
{items}

For each claim give:
- itemIndex: index of the item it came from
- claimText: the claim in clear, standalone form
- claimType: fact | prediction | hint | opinion | critique | question
- topic: same categories as the item topic
- stance: bullish | bearish | neutral
- bullishness: 0.0 (maximally bearish) to 1.0 (maximally bullish)
- confidence: how confident the author sounds (hedging lowers it), 0.0-1.0
- timeframe: near-term (<1y) | medium-term (1-3y) | long-term (3-10y) | unspecified | null
- targetEntity: who or what the claim is about, or null
- evidenceProvided: strong | moderate | weak | appeal-to-authority
- quoteworthiness: 0.0-1.0
- relatedEntities: people, papers, models or companies mentioned
- originalQuote: short verbatim quote if notable, else null

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "claims": [
        {{
            "itemIndex": 0,
            "claimText": "The claim in clear form",
            "claimType": "prediction",
            "topic": "reasoning",
            "stance": "bullish",
            "bullishness": 0.8,
            "confidence": 0.7,
            "timeframe": "medium-term",
            "targetEntity": "field",
            "evidenceProvided": "moderate",
            "quoteworthiness": 0.6,
            "relatedEntities": ["o1"],
            "originalQuote": null
        }}
    ]
}}"""

EXTRACT_ITEM = """\
[{index}] {author} ({author_category}) via {source}, topic hint: {topic}
{body}"""

SYNTHESIZE_TOPIC = """\
Synthesize the current discourse on "{topic}" in AI research.

LAB RESEARCHER CLAIMS:
{lab_claims}

CRITIC CLAIMS:
{critic_claims}

OTHER CLAIMS (academics, independents, journalists):
{other_claims}

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "labConsensus": "What lab researchers broadly agree on (2-3 sentences)",
    "criticConsensus": "What critics broadly agree on (2-3 sentences)",
    "agreements": ["Points both sides accept"],
    "disagreements": [
        {{"point": "...", "labPosition": "...", "criticPosition": "..."}}
    ],
    "emergingNarratives": ["New framings gaining traction"],
    "notablePredictions": ["Author: prediction (timeframe)"],
    "evidenceQuality": 0.6,
    "synthesisNarrative": "A balanced two-paragraph synthesis"
}}"""

ASSESS_HYPE = """\
Assess which AI topics are overhyped, underhyped, or accurately assessed, \
based on these topic syntheses. Hype delta is lab sentiment minus critic \
sentiment; positive means labs are more bullish than critics.

SYNTHESES:
{syntheses}

Overhyped: strong lab claims substantively challenged, low evidence with high \
confidence, or repeatedly failed predictions.
Underhyped: real progress critics have not updated on, or strong evidence the \
narrative has not caught up with.
Accurately assessed: lab and critic views roughly aligned with the evidence.

Score each topic from -1.0 (severely underhyped) to +1.0 (severely overhyped).

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "overhyped": [
        {{"topic": "agents", "score": 0.7, "reasoning": "...", "keyEvidence": ["..."]}}
    ],
    "underhyped": [],
    "accuratelyAssessed": [],
    "overallSentiment": 0.65,
    "summary": "One paragraph on the current hype landscape"
}}"""

SYNTHESIS_BLOCK = """\
## {topic} ({claim_count} claims)
Lab consensus: {lab_consensus}
Critic consensus: {critic_consensus}
Hype delta: {delta:+.2f} (lab {lab_sentiment:.2f}, critic {critic_sentiment:.2f}, \
confidence {confidence:.2f})
Key disagreements: {disagreements}"""

WRITE_DIGEST = """\
Write a weekly AI research intelligence digest in markdown for an expert \
audience that wants signal, not noise.

TOPIC SYNTHESES:
{syntheses}

HYPE ASSESSMENT:
{summary}
Overhyped: {overhyped}
Underhyped: {underhyped}
Field sentiment: {sentiment:.0%} bullish

Use these sections: TL;DR (3-5 bullets), Hype Check, Research Signals, \
Critic Corner, Key Debates, Predictions Tracker, Worth Watching.
Be direct and fair, cite specific claims, and stay under 1500 words. \
Return only the markdown."""

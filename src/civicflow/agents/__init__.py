"""Agents and the engines behind them.

- models: Result contracts (Classification, PriorityScore, SimilarityResult, ...)
- base: AgentType, AgentRequest/AgentResponse, the Agent interface, AgentRegistry
- llm: Shared chat-model provider and JSON response parsing
- classifier: Keyword and LLM domain classifiers
- priority: Rule-based and LLM priority scorers
- duplicates: Duplicate detector backed by the similarity engine
- insights: Emerging-issue detection and reporting

Submodules are imported directly; this package does not re-export them
because the issue models depend on agents.models.
"""

"""Session manager for issue-tracked planning and programming sessions.

This package routes incoming requests, from users or from labeled
GitHub issues, to long-running sessions on a run-execution service:
- Route classification with an LLM
- Planner session creation, resume and fork
- GitHub issue as the durable record of the conversation
- Labeled-issue webhook ingress
"""

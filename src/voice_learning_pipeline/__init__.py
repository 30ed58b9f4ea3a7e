"""
Voice Learning Pipeline - continuous learning for voice customer-service agents.

This package implements the scheduled learning cycle that:
1. Discovers the target agents (or uses one pinned agent)
2. Harvests completed call transcripts for a time window
3. Filters adversarial calls and vetoes coordinated probing waves
4. Extracts recurring issues and edge cases into an analysis summary
5. Asks a generative model for behaviour improvements and validates them
6. Merges accepted improvements into each agent's knowledge base
"""

__version__ = "1.0.0"

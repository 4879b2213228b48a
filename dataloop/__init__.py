"""dataloop - approval-gated code execution loop for data-analysis chats.

The AI proposes code against a dataset, a human approves it, the sandbox
runs it, and the controller decides whether to feed the results back for
another round.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

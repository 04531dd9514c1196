"""FlowForge - visual workflow execution engine.

Runs graphs of typed operation nodes, propagating item batches along the
edges selected by each node's branch decision.
"""

__version__ = "0.1.0"

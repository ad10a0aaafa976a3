"""
autoaccept - Auto-accept agent prompts in IDEs exposing a Chrome DevTools Protocol port.

Discovers debuggable targets, keeps one command channel per page, injects a small
page bridge and drives a per-page agent that clicks accept/run/apply controls
while skipping banned terminal commands.
"""

from .agent import AgentConfig, RemoteAgent
from .discovery import Target, TargetScanner
from .manager import ConnectionManager, ScriptInjector
from .orchestrator import Orchestrator

__version__ = "0.1.0"
__all__ = ["AgentConfig", "RemoteAgent", "Target", "TargetScanner", "ConnectionManager",
           "ScriptInjector", "Orchestrator"]

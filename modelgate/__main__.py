"""
modelgate - Provider Gateway

Normalizes remote model providers behind one "pick a model, start a
conversation" surface.

Quick Start:
    pip install -e .
    modelgate provider add openrouter --base-url https://openrouter.ai/api/v1
    modelgate model list --provider openrouter --refresh
"""

from modelgate.cli.cli import main

if __name__ == "__main__":
    main()

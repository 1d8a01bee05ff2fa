"""
Process template graph and validation.
"""

from .graph import NextStep, StepDefinition, TemplateGraph
from .schemas import ProcessTemplateSchema, StepDefinitionSchema, validate_template

__all__ = [
    'NextStep',
    'StepDefinition',
    'TemplateGraph',
    'ProcessTemplateSchema',
    'StepDefinitionSchema',
    'validate_template',
]

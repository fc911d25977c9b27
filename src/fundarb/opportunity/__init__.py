"""Opportunity layer -- scenario classification, profit estimation and ranking."""

from fundarb.opportunity.classifier import ScenarioClassifier
from fundarb.opportunity.ranker import OpportunityRanker
from fundarb.opportunity.rules import DEFAULT_RULES, ScenarioConfig

__all__ = ["DEFAULT_RULES", "OpportunityRanker", "ScenarioClassifier", "ScenarioConfig"]

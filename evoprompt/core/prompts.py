
REFLECTION_PROMPT = """You are analyzing execution traces for a genetic algorithm-based prompt optimization system.

**Task**: Analyze execution patterns and provide optimization recommendations for prompt evolution.

**Execution Summary**:
{trace_summary}

**Optimization Context**:
- This is part of a genetic algorithm for prompt optimization
- Available mutation types: rewrite, expand, simplify, combine, rephrase
- Goal is to improve prompt effectiveness through iterative evolution
- Focus on actionable insights that can guide mutation and crossover operations
{context_lines}

**Key Optimization Insights**:
{insight_lines}

**Sample Traces**:
{sample_traces}

Please analyze these execution patterns and provide optimization recommendations in the following JSON format:
{{
  "diagnosis": "Brief description of execution patterns and issues identified",
  "improvements": ["List of 2-4 specific, actionable improvement suggestions"],
  "confidence": 0.85,
  "reasoning": "Your detailed reasoning process for the analysis",
  "suggested_mutations": ["List of 2-3 mutation types that would be most beneficial"],
  "insights": {{
    "pattern_detected": "primary_pattern_identified",
    "optimization_opportunity": "key_area_for_improvement"
  }}
}}

Respond with the JSON object only."""


INSTRUCTION_PROPOSAL_PROMPT = """You improve the instructions given to an AI system.

## Current Instruction
{original_instruction}

## Execution Traces
{trace_analysis}

## Failures
{failure_analysis}

## Task
Propose a single improved instruction that addresses the issues above while keeping the original intent.
Respond with the improved instruction text only, without quotes or commentary."""


PREDICT_PROMPT = """{instruction}

{demonstrations}{inputs}

Respond with the answer only."""

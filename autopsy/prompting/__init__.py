"""
Model prompting for the autopsy diagnosis.

- Meta prompt (identity + output rules)
- Phase prompts: Scout (which file?), Surgeon (full corrected file), single-phase v1
- Typed contracts for each phase's JSON output
- Structured response decoder (fence stripping + validation -> ProtocolError)
"""

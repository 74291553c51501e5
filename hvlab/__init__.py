"""Hyper-V lab agent: topology validation, deployment orchestration and VM control."""

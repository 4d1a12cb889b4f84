# soc2_agent/tools/__init__.py

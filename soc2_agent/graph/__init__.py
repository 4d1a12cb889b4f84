# soc2_agent/graph/__init__.py

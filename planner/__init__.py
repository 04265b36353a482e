# Planner package

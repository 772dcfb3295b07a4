# State = everything needed to resume or audit an automation run at a given step.

# Step list (the plan)

# Step executions: status, start/end time

# Execution events: command, driver result, reasoning, DOM snapshot, screenshot

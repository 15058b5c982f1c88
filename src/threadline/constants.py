"""Reserved names shared across threadline modules."""

# Name of the built-in tool whose results reveal deferred tools
TOOL_SEARCH = "tool_search"

# Handoff tools are named "<prefix><agent_id>"
TRANSFER_TOOL_PREFIX = "transfer_to_"

# Prefix of synthetic ids assigned to tool calls that arrive without one
TOOL_CALL_ID_PREFIX = "toolu_"

STEP_ID_PREFIX = "step_"
MESSAGE_ID_PREFIX = "msg_"

WEB_SEARCH = "web_search"

PREVIOUS_CONTEXT_HEADER = "[Previous agent context]"

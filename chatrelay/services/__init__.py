"""Collaborators the chat core consumes: retrieval, web search, agents, attachments."""

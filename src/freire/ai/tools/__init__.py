"""Tools offered to the model."""

from .web_search import WEB_SEARCH_TOOL, SearchResponse, SearchResult, ToolSpec, WebSearchTool

__all__ = ["WEB_SEARCH_TOOL", "SearchResponse", "SearchResult", "ToolSpec", "WebSearchTool"]

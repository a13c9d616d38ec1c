"""Data models shared by the controller, the page agent and the outer surfaces."""

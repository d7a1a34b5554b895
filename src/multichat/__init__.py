"""multichat: aggregate Twitch, YouTube and TikTok live chat into one stream."""

__version__ = "0.1.0"

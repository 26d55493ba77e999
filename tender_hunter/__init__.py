"""
TenderHunter — Procurement lot analysis for Uzbek tender platforms

Extracts products from tender documents and lot pages, finds local
suppliers and prices through web search, scores the opportunity and
prepares a bid.
"""

__version__ = "1.0.0"
__author__ = "TenderHunter"

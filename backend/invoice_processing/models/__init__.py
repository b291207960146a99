"""
Database models package
"""

from .vendor import Vendor
from .extraction_prompt import ExtractionPrompt
from .prompt_test_run import PromptTestRun
from .invoice import Invoice, LineItem, ProcessingStatus, ReviewStatus

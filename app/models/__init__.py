# Automatically load all models so metadata knows them
from app.models.user_model import User
from app.models.book_model import Book
from app.models.loan_model import Loan
from app.models.system_settings_model import SystemSetting
from app.models.job_run_model import JobRun

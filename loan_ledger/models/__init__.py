# Automatically load all models so metadata knows them
from loan_ledger.models.client_model import Client
from loan_ledger.models.loan_model import Loan
from loan_ledger.models.payment_model import Payment

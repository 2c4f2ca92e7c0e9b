"""M-PESA STK push deposit relay."""

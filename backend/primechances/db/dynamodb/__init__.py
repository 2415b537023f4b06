"""Shared DynamoDB utilities.

This package centralizes:
- boto3 client/resource configuration
- retry/backoff policy and botocore error mapping
- cursor pagination token encoding/decoding
- atomic counters and transactional helpers used by the lifecycle repositories

Single-table layout (pk/sk plus GSI1 and GSI2):

  OPPORTUNITY#<id>      PROFILE                 opportunity row
  OPPORTUNITY#<id>      BOOKMARK#<userId>       bookmark (GSI1: USER#<userId>#BOOKMARKS)
  OPPORTUNITY#<id>      APPLICATION#<userId>    application (GSI1: USER#<userId>#APPLICATIONS)
  SCRAPEDURL#<sha>      MAP                     scraped source URL dedupe mapping
  USER#<userId>         PROFILE                 user profile (GSI1: TYPE#USER_PROFILE)
  USER#<userId>         ROLE#<role>             role grant
  USER#<userId>         NOTIFICATION#<id>       notification
  FEATURE#<key>         TOGGLE                  feature toggle (GSI1: TYPE#FEATURE_TOGGLE)
  ACTIVITY              <createdAt>#<id>        admin activity / deletion log
  OUTBOX#<eventId>      PROFILE                 outbox event (GSI1: OUTBOX#PENDING)

Opportunity rows are indexed by status on GSI1 and by deadline on GSI2.
"""
